"""ORM models backing the database local-storage mode."""

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class LocalStorageEntryModel(TimestampMixin, Base):
    __tablename__ = "local_storage_entries"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


__all__ = ["Base", "LocalStorageEntryModel"]
