"""Onboarding catalog reads and the level/topic selection forms."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import INTERNAL_ERROR_MESSAGE, AuthError
from .remote import RemoteAuthClient
from .repositories.catalog import (
    CatalogRepository,
    CategoryOption,
    LevelOption,
    TopicOption,
    category_for_ui,
    level_for_ui,
)
from .schemas import ProficiencyLevel
from .server_auth import AuthenticatedUser, current_user, get_remote_client, redirect, with_query

router = APIRouter(tags=["onboarding"])
logger = logging.getLogger(__name__)

INVALID_LEVEL_MESSAGE = "Nivel inválido"
LEVEL_SAVE_ERROR_MESSAGE = "Error al guardar el nivel"
TOPICS_REQUIRED_MESSAGE = "Selecciona al menos un tema"
TOPICS_SAVE_ERROR_MESSAGE = "Error al guardar los temas"


class OnboardingStatusResponse(BaseModel):
    user_id: str
    level: Optional[LevelOption] = None
    topics: List[TopicOption] = Field(default_factory=list)
    completed: bool = False


def _catalog_unavailable(exc: AuthError) -> HTTPException:
    logger.error("Catalog read failed: %s", exc)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)


@router.get("/api/onboarding/levels", response_model=List[LevelOption])
async def list_levels(
    _: AuthenticatedUser = Depends(current_user),
    remote: RemoteAuthClient = Depends(get_remote_client),
) -> List[LevelOption]:
    try:
        levels = await CatalogRepository(remote).list_levels()
    except AuthError as exc:
        raise _catalog_unavailable(exc) from exc
    return [level_for_ui(level) for level in levels]


@router.get("/api/onboarding/topics", response_model=List[CategoryOption])
async def list_topics(
    _: AuthenticatedUser = Depends(current_user),
    remote: RemoteAuthClient = Depends(get_remote_client),
) -> List[CategoryOption]:
    try:
        categories = await CatalogRepository(remote).list_categories_with_topics()
    except AuthError as exc:
        raise _catalog_unavailable(exc) from exc
    return [category_for_ui(category) for category in categories]


@router.get("/api/onboarding/status", response_model=OnboardingStatusResponse)
async def onboarding_status(
    user: AuthenticatedUser = Depends(current_user),
    remote: RemoteAuthClient = Depends(get_remote_client),
) -> OnboardingStatusResponse:
    catalog = CatalogRepository(remote)
    try:
        level = await catalog.get_user_level(user.id)
        topics = await catalog.get_user_selected_topics(user.id)
    except AuthError as exc:
        raise _catalog_unavailable(exc) from exc
    return OnboardingStatusResponse(
        user_id=user.id,
        level=level_for_ui(level) if level else None,
        topics=[TopicOption(id=topic.topic_id, name=topic.name, description=topic.description) for topic in topics],
        completed=level is not None and bool(topics),
    )


@router.post("/onboarding/level")
async def choose_level(
    response: Response,
    level: str = Form(""),
    user: AuthenticatedUser = Depends(current_user),
    remote: RemoteAuthClient = Depends(get_remote_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    back = settings.onboarding_path
    try:
        choice = ProficiencyLevel(level.strip().lower())
    except ValueError:
        return redirect(with_query(back, error=INVALID_LEVEL_MESSAGE), carry=response)

    catalog = CatalogRepository(remote)
    try:
        level_id = await catalog.get_level_id_by_name(choice.value)
        if level_id is None:
            return redirect(with_query(back, error=INVALID_LEVEL_MESSAGE), carry=response)
        await catalog.assign_level_to_user(level_id, user.id)
    except AuthError as exc:
        logger.error("Could not assign level %s to %s: %s", choice.value, user.id, exc)
        return redirect(with_query(back, error=LEVEL_SAVE_ERROR_MESSAGE), carry=response)
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error while assigning level to %s", user.id)
        return redirect(with_query(back, error=INTERNAL_ERROR_MESSAGE), carry=response)
    return redirect(settings.topics_path, carry=response)


@router.post("/onboarding/topics")
async def choose_topics(
    response: Response,
    topics: List[str] = Form([]),
    user: AuthenticatedUser = Depends(current_user),
    remote: RemoteAuthClient = Depends(get_remote_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    back = settings.topics_path
    selected = [topic.strip() for topic in topics if topic and topic.strip()]
    if not selected:
        return redirect(with_query(back, error=TOPICS_REQUIRED_MESSAGE), carry=response)

    catalog = CatalogRepository(remote)
    try:
        level = await catalog.get_user_level(user.id)
        saved = await catalog.save_user_topic_selections(user.id, selected, level.id if level else None)
    except AuthError as exc:
        logger.error("Could not save topics for %s: %s", user.id, exc)
        return redirect(with_query(back, error=TOPICS_SAVE_ERROR_MESSAGE), carry=response)
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error while saving topics for %s", user.id)
        return redirect(with_query(back, error=INTERNAL_ERROR_MESSAGE), carry=response)
    logger.info("User %s selected %d topics", user.id, saved)
    return redirect(settings.home_path, carry=response)


__all__ = ["OnboardingStatusResponse", "router"]
