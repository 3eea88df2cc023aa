"""Onboarding catalog: proficiency levels, topic categories and per-user selections."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ProfileStoreError
from ..remote import RemoteAuthClient

logger = logging.getLogger(__name__)

LEVEL_ICONS: Dict[str, str] = {
    "beginner": "🌱",
    "elementary": "📚",
    "intermediate": "🎯",
    "advanced": "🚀",
}
DEFAULT_LEVEL_ICON = "📖"


class Level(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    title: Optional[str] = None
    sub_title: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    feature: Optional[str] = None
    id_user: Optional[str] = None


class Topic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    topic_id: str
    name: str
    description: Optional[str] = None
    category_id: Optional[int] = None
    level_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TopicCategory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    category_id: str
    title: str
    icon: str = ""
    description: Optional[str] = None
    topics: List[Topic] = Field(default_factory=list)


class LevelOption(BaseModel):
    id: str
    title: str
    subtitle: str
    description: str
    icon: str
    features: List[str] = Field(default_factory=list)


class TopicOption(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class CategoryOption(BaseModel):
    id: str
    title: str
    icon: str
    description: Optional[str] = None
    topics: List[TopicOption] = Field(default_factory=list)


def _parse(model: type[BaseModel], rows: Iterable[Dict[str, Any]], table: str) -> List[Any]:
    parsed = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as exc:
            raise ProfileStoreError(f"Malformed row in '{table}': {exc}") from exc
    return parsed


def level_for_ui(level: Level) -> LevelOption:
    level_name = (level.title or "").lower()
    return LevelOption(
        id=level_name,
        title=level.title or "",
        subtitle=level.sub_title or "",
        description=level.description or "",
        icon=level.icon or LEVEL_ICONS.get(level_name, DEFAULT_LEVEL_ICON),
        features=level.feature.split(", ") if level.feature else [],
    )


def category_for_ui(category: TopicCategory) -> CategoryOption:
    return CategoryOption(
        id=category.category_id,
        title=category.title,
        icon=category.icon,
        description=category.description,
        topics=[
            TopicOption(id=topic.topic_id, name=topic.name, description=topic.description)
            for topic in category.topics
        ],
    )


class CatalogRepository:
    def __init__(self, remote: RemoteAuthClient) -> None:
        self._remote = remote

    async def list_levels(self) -> List[Level]:
        rows = await self._remote.select_rows("level", order_by=("id",))
        logger.debug("Levels fetched: %d", len(rows))
        return _parse(Level, rows, "level")

    async def get_level(self, level_id: int) -> Optional[Level]:
        rows = await self._remote.select_rows("level", filters={"id": level_id}, limit=1)
        levels = _parse(Level, rows, "level")
        return levels[0] if levels else None

    async def get_level_id_by_name(self, level_name: str) -> Optional[int]:
        name = level_name.strip()
        if not name:
            return None
        rows = await self._remote.select_rows(
            "level",
            "id",
            filters={"title": name[0].upper() + name[1:].lower()},
            limit=1,
        )
        return int(rows[0]["id"]) if rows else None

    async def get_user_level(self, user_id: str) -> Optional[Level]:
        rows = await self._remote.select_rows("level", filters={"id_user": user_id}, limit=1)
        levels = _parse(Level, rows, "level")
        return levels[0] if levels else None

    async def has_user_assigned_level(self, user_id: str) -> bool:
        rows = await self._remote.select_rows("level", "id", filters={"id_user": user_id}, limit=1)
        return bool(rows)

    async def unassign_user_from_all_levels(self, user_id: str) -> None:
        await self._remote.update_rows("level", {"id_user": None}, filters={"id_user": user_id})

    async def assign_level_to_user(self, level_id: int, user_id: str) -> None:
        """Assign ``level_id`` to the user, releasing any level assigned before."""
        await self.unassign_user_from_all_levels(user_id)
        updated = await self._remote.update_rows("level", {"id_user": user_id}, filters={"id": level_id})
        if not updated:
            raise ProfileStoreError(f"Level {level_id} does not exist", missing=True)
        logger.info("Assigned level %s to user %s", level_id, user_id)

    async def list_topic_categories(self) -> List[TopicCategory]:
        rows = await self._remote.select_rows("topic_category", order_by=("id",))
        return _parse(TopicCategory, rows, "topic_category")

    async def list_categories_with_topics(self) -> List[TopicCategory]:
        rows = await self._remote.select_rows("topic_category", "*, topics:topic(*)", order_by=("id",))
        return _parse(TopicCategory, rows, "topic_category")

    async def get_topic(self, topic_id: str) -> Optional[Topic]:
        rows = await self._remote.select_rows("topic", filters={"topic_id": topic_id}, limit=1)
        topics = _parse(Topic, rows, "topic")
        return topics[0] if topics else None

    async def get_user_selected_topics(self, user_id: str) -> List[Topic]:
        rows = await self._remote.select_rows("user_topic", "topic:topic(*)", filters={"user_id": user_id})
        embedded = [row["topic"] for row in rows if row.get("topic")]
        return _parse(Topic, embedded, "topic")

    async def save_user_topic_selections(
        self,
        user_id: str,
        topic_ids: List[str],
        level_id: Optional[int] = None,
    ) -> int:
        """Replace the user's topic selections; returns how many were stored."""
        await self._remote.delete_rows("user_topic", filters={"user_id": user_id})
        topics = await self._remote.select_rows("topic", "id, topic_id", filters={"topic_id": list(topic_ids)})
        if not topics:
            raise ProfileStoreError("No topics found for the provided topic ids", missing=True)
        selections = [
            {"user_id": user_id, "topic_id": topic["id"], "level_id": level_id}
            for topic in topics
        ]
        await self._remote.insert_rows("user_topic", selections)
        logger.info("Saved %d topic selections for user %s", len(selections), user_id)
        return len(selections)


__all__ = [
    "CatalogRepository",
    "CategoryOption",
    "DEFAULT_LEVEL_ICON",
    "LEVEL_ICONS",
    "Level",
    "LevelOption",
    "Topic",
    "TopicCategory",
    "TopicOption",
    "category_for_ui",
    "level_for_ui",
]
