"""Profile rows stored in the provider's ``user`` table."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from ..errors import ProfileStoreError
from ..remote import RemoteAuthClient
from ..schemas import UserProfile

logger = logging.getLogger(__name__)

PROFILE_TABLE = "user"
PROFILE_COLUMNS = "id, name, email"


class ProfileRepository:
    """Thin mapper between profile rows and ``UserProfile``."""

    def __init__(self, remote: RemoteAuthClient) -> None:
        self._remote = remote

    @staticmethod
    def _to_domain(row: Mapping[str, Any]) -> UserProfile:
        try:
            return UserProfile.model_validate(
                {"id": row.get("id"), "email": row.get("email"), "name": row.get("name")}
            )
        except ValidationError as exc:
            raise ProfileStoreError(f"Profile row {row.get('id')} is invalid: {exc}") from exc

    async def get(self, user_id: str) -> Optional[UserProfile]:
        rows = await self._remote.select_rows(
            PROFILE_TABLE,
            PROFILE_COLUMNS,
            filters={"id": user_id},
            limit=1,
        )
        if not rows:
            return None
        return self._to_domain(rows[0])

    async def require(self, user_id: str) -> UserProfile:
        profile = await self.get(user_id)
        if profile is None:
            raise ProfileStoreError(f"No profile row for user {user_id}", missing=True)
        return profile

    async def create(self, profile: UserProfile) -> UserProfile:
        rows = await self._remote.insert_rows(PROFILE_TABLE, [profile.model_dump()])
        logger.info("Created profile row for user %s", profile.id)
        return self._to_domain(rows[0]) if rows else profile

    async def update(self, user_id: str, changes: Mapping[str, Any]) -> UserProfile:
        allowed: Dict[str, Any] = {key: value for key, value in changes.items() if key in {"name", "email"}}
        if not allowed:
            return await self.require(user_id)
        current = await self.require(user_id)
        merged = self._to_domain({**current.model_dump(), **allowed})
        rows = await self._remote.update_rows(
            PROFILE_TABLE,
            {"name": merged.name, "email": merged.email},
            filters={"id": user_id},
        )
        return self._to_domain(rows[0]) if rows else merged


__all__ = ["PROFILE_COLUMNS", "PROFILE_TABLE", "ProfileRepository"]
