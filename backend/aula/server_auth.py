"""Per-request identity derived from the session cookies."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, Request, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .cookies import clear_tokens, get_tokens, set_tokens
from .errors import AuthError, TransportError
from .remote import LazyRemoteClient, RemoteAuthClient, RemoteUser
from .repositories.profiles import ProfileRepository

logger = logging.getLogger(__name__)


class AuthenticatedUser(BaseModel):
    id: str
    name: str
    email: str
    created_at: str


class RedirectRequired(Exception):
    """Raised by dependencies that must send the browser elsewhere."""

    def __init__(self, location: str, carry: Optional[Response] = None) -> None:
        super().__init__(location)
        self.location = location
        self.carry = carry


def with_query(path: str, **params: str) -> str:
    return f"{path}?{urlencode(params)}" if params else path


def carry_cookies(source: Optional[Response], target: Response) -> Response:
    """Copy ``Set-Cookie`` headers already placed on ``source`` onto ``target``."""
    if source is not None:
        for key, value in source.raw_headers:
            if key.lower() == b"set-cookie":
                target.raw_headers.append((key, value))
    return target


def redirect(url: str, *, carry: Optional[Response] = None, status_code: int = status.HTTP_302_FOUND) -> RedirectResponse:
    target = RedirectResponse(url, status_code=status_code)
    carry_cookies(carry, target)
    return target


def get_remote_client(request: Request, settings: Settings = Depends(get_settings)) -> RemoteAuthClient:
    """Fresh provider client per request; never shared between users.

    The client connects on first use, so configuration or network failures
    reach the handler as ``TransportError``.
    """
    access_token, _ = get_tokens(request)
    return LazyRemoteClient(settings, access_token)


async def get_authenticated_user(
    request: Request,
    response: Response,
    remote: RemoteAuthClient,
    settings: Optional[Settings] = None,
) -> Optional[AuthenticatedUser]:
    """Resolve the cookie session to a user with a profile row, or ``None``.

    An access token the provider no longer accepts is refreshed once; on
    success both cookies are rewritten, otherwise they are cleared.
    """
    settings = settings or get_settings()
    access_token, refresh_token = get_tokens(request)
    if not access_token or not refresh_token:
        return None

    remote_user: Optional[RemoteUser] = None
    try:
        remote_user = await remote.get_user(access_token)
    except TransportError as exc:
        logger.error("Provider unavailable while resolving the session: %s", exc)
        return None
    except AuthError as exc:
        logger.info("Access token rejected: %s", exc)

    if remote_user is None:
        try:
            session = await remote.refresh_session(refresh_token)
        except TransportError as exc:
            logger.error("Provider unavailable while refreshing the session: %s", exc)
            return None
        except AuthError as exc:
            logger.info("Session refresh failed, clearing cookies: %s", exc)
            clear_tokens(response)
            return None
        set_tokens(response, session.access_token, session.refresh_token, settings)
        remote_user = session.user

    try:
        profile = await ProfileRepository(remote).get(remote_user.id)
    except AuthError as exc:
        logger.error("Error getting user data for %s: %s", remote_user.id, exc)
        return None
    if profile is None:
        logger.warning("Authenticated user %s has no profile row", remote_user.id)
        return None

    return AuthenticatedUser(
        id=profile.id,
        name=profile.name,
        email=profile.email or "",
        created_at=remote_user.created_at or datetime.now(timezone.utc).isoformat(),
    )


async def optional_user(
    request: Request,
    response: Response,
    remote: RemoteAuthClient = Depends(get_remote_client),
    settings: Settings = Depends(get_settings),
) -> Optional[AuthenticatedUser]:
    return await get_authenticated_user(request, response, remote, settings)


async def current_user(
    response: Response,
    user: Optional[AuthenticatedUser] = Depends(optional_user),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    if user is None:
        raise RedirectRequired(settings.signin_path, carry=response)
    return user


__all__ = [
    "AuthenticatedUser",
    "RedirectRequired",
    "carry_cookies",
    "current_user",
    "get_authenticated_user",
    "get_remote_client",
    "optional_user",
    "redirect",
    "with_query",
]
