"""Local key-value persistence used by the client-side caches."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .db.models import LocalStorageEntryModel
from .db.session import session_scope

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """String-keyed store of serialized values. Implementations never raise."""

    def get_item(self, key: str) -> Optional[str]:  # pragma: no cover - protocol definition
        ...

    def set_item(self, key: str, value: str) -> None:  # pragma: no cover - protocol definition
        ...

    def remove_item(self, key: str) -> None:  # pragma: no cover - protocol definition
        ...


class MemoryKeyValueStore:
    """Process-local store; the default for tests and headless clients."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class JsonFileKeyValueStore:
    """Single JSON document on disk holding every key."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()

    def _load_unlocked(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError):
            logger.exception("Failed to read local storage file %s", self._path)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed local storage file %s", self._path)
            return {}
        return {str(key): value for key, value in raw.items() if isinstance(value, str)}

    def _write_unlocked(self, items: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(items, handle, indent=2)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load_unlocked().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._load_unlocked()
            items[key] = value
            try:
                self._write_unlocked(items)
            except OSError:
                logger.exception("Error saving %s to local storage", key)

    def remove_item(self, key: str) -> None:
        with self._lock:
            items = self._load_unlocked()
            if items.pop(key, None) is None:
                return
            try:
                self._write_unlocked(items)
            except OSError:
                logger.exception("Error removing %s from local storage", key)


class DatabaseKeyValueStore:
    """Store backed by the ``local_storage_entries`` table."""

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None) -> None:
        self._session_factory = session_factory

    def get_item(self, key: str) -> Optional[str]:
        try:
            with session_scope(self._session_factory) as session:
                stmt = select(LocalStorageEntryModel.value).where(LocalStorageEntryModel.key == key)
                return session.execute(stmt).scalar_one_or_none()
        except Exception:  # noqa: BLE001
            logger.exception("Error reading %s from local storage", key)
            return None

    def set_item(self, key: str, value: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                entry = session.get(LocalStorageEntryModel, key)
                if entry is None:
                    session.add(LocalStorageEntryModel(key=key, value=value))
                else:
                    entry.value = value
        except Exception:  # noqa: BLE001
            logger.exception("Error saving %s to local storage", key)

    def remove_item(self, key: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                entry = session.get(LocalStorageEntryModel, key)
                if entry is not None:
                    session.delete(entry)
        except Exception:  # noqa: BLE001
            logger.exception("Error removing %s from local storage", key)


def build_key_value_store(settings: Settings) -> KeyValueStore:
    if settings.storage_mode == "file":
        return JsonFileKeyValueStore(Path(settings.storage_path))
    if settings.storage_mode == "database":
        return DatabaseKeyValueStore()
    return MemoryKeyValueStore()


__all__ = [
    "DatabaseKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "build_key_value_store",
]
