"""Onboarding preferences (level and topic) cached in local storage."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from ..errors import InputValidationError
from ..schemas import ProficiencyLevel, UserPreferences, issue_messages
from ..storage import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_KEY = "user-preferences"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserPreferencesCache:
    """Holds either a complete, persisted record or an in-memory draft.

    A draft (level without topic or the reverse) is never written to
    storage; it becomes a persisted record once both halves are present.
    """

    def __init__(self, storage: KeyValueStore) -> None:
        self._storage = storage
        self._preferences: Optional[UserPreferences] = None
        self._draft: Dict[str, Any] = {}

    @property
    def preferences(self) -> Optional[UserPreferences]:
        return self._preferences

    @property
    def draft(self) -> Dict[str, Any]:
        return dict(self._draft)

    def initialize(self) -> Optional[UserPreferences]:
        raw = self._storage.get_item(STORAGE_KEY)
        if raw is None:
            return self._preferences
        try:
            self._preferences = UserPreferences.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Discarding invalid stored preferences: %s", exc)
            self._storage.remove_item(STORAGE_KEY)
            self._preferences = None
        self._draft = {}
        return self._preferences

    def set_level(self, level: Union[ProficiencyLevel, str]) -> Optional[UserPreferences]:
        return self._merge({"level": level})

    def set_topic(self, topic: str) -> Optional[UserPreferences]:
        return self._merge({"topic": topic})

    def set_preferences(self, changes: Mapping[str, Any]) -> UserPreferences:
        merged = self._current()
        merged.update(changes)
        merged["updated_at"] = _now()
        return self._commit(merged)

    def complete_onboarding(self) -> UserPreferences:
        current = self._current()
        if not current.get("level") or not current.get("topic"):
            raise InputValidationError(["No se puede completar el onboarding: falta el nivel o el tema"])
        current["completed_onboarding"] = True
        current["updated_at"] = _now()
        return self._commit(current)

    def clear(self) -> None:
        self._storage.remove_item(STORAGE_KEY)
        self._preferences = None
        self._draft = {}

    def _current(self) -> Dict[str, Any]:
        if self._preferences is not None:
            base = self._preferences.model_dump()
        else:
            base = {"completed_onboarding": False, "created_at": _now()}
        base.update(self._draft)
        return base

    def _merge(self, changes: Dict[str, Any]) -> Optional[UserPreferences]:
        merged = self._current()
        merged.update(changes)
        merged["updated_at"] = _now()
        if merged.get("level") and merged.get("topic"):
            return self._commit(merged)
        self._draft = merged
        logger.debug("Preferences kept as draft until level and topic are both set")
        return None

    def _commit(self, data: Dict[str, Any]) -> UserPreferences:
        try:
            validated = UserPreferences.model_validate(data)
        except ValidationError as exc:
            raise InputValidationError(issue_messages(exc)) from exc
        self._storage.set_item(STORAGE_KEY, validated.model_dump_json())
        self._preferences = validated
        self._draft = {}
        return validated


__all__ = ["STORAGE_KEY", "UserPreferencesCache"]
