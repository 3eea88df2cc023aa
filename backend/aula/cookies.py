"""Session tokens mirrored into HTTP cookies for server-rendered requests."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import Request, Response

from .config import Settings

ACCESS_TOKEN_COOKIE = "sb-access-token"
REFRESH_TOKEN_COOKIE = "sb-refresh-token"


def set_tokens(response: Response, access_token: str, refresh_token: str, settings: Settings) -> None:
    secure = settings.is_production
    for name, value in ((ACCESS_TOKEN_COOKIE, access_token), (REFRESH_TOKEN_COOKIE, refresh_token)):
        response.set_cookie(
            key=name,
            value=value,
            max_age=settings.cookie_max_age,
            path="/",
            httponly=secure,
            secure=secure,
            samesite="lax",
        )


def get_tokens(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(access_token, refresh_token)``; either may be ``None``."""
    access = request.cookies.get(ACCESS_TOKEN_COOKIE) or None
    refresh = request.cookies.get(REFRESH_TOKEN_COOKIE) or None
    return access, refresh


def clear_tokens(response: Response) -> None:
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(REFRESH_TOKEN_COOKIE, path="/")


__all__ = ["ACCESS_TOKEN_COOKIE", "REFRESH_TOKEN_COOKIE", "clear_tokens", "get_tokens", "set_tokens"]
