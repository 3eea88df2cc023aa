"""Repositories over the provider's row storage."""

from .catalog import CatalogRepository
from .profiles import ProfileRepository

__all__ = ["CatalogRepository", "ProfileRepository"]
