"""Tagged error types raised by the session cache, repositories and remote adapter."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional


class AuthErrorKind(str, Enum):
    VALIDATION = "validation"
    REMOTE_AUTH = "remote_auth"
    PROFILE_STORE = "profile_store"
    TRANSPORT = "transport"


class AuthError(Exception):
    """Base class for every failure surfaced by the auth layer."""

    kind: AuthErrorKind = AuthErrorKind.TRANSPORT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputValidationError(AuthError):
    """Form or payload rejected before any remote call was made."""

    kind = AuthErrorKind.VALIDATION

    def __init__(self, issues: Iterable[str]) -> None:
        self.issues: List[str] = [issue for issue in issues if issue] or ["Datos inválidos"]
        super().__init__(", ".join(self.issues))


class RemoteAuthError(AuthError):
    """The remote provider rejected an auth call (bad credentials, rate limit, ...)."""

    kind = AuthErrorKind.REMOTE_AUTH

    def __init__(self, code: Optional[str], message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class ProfileStoreError(AuthError):
    """A row read/write failed or an expected profile row is missing."""

    kind = AuthErrorKind.PROFILE_STORE

    def __init__(self, message: str, *, missing: bool = False) -> None:
        super().__init__(message)
        self.missing = missing


class TransportError(AuthError):
    """Network failure or unexpected SDK exception while talking to the provider."""

    kind = AuthErrorKind.TRANSPORT


INVALID_CREDENTIALS_MESSAGE = "Credenciales inválidas. Verifica tu email y contraseña."
EMAIL_NOT_CONFIRMED_MESSAGE = "Por favor, verifica tu email antes de iniciar sesión."
RATE_LIMITED_MESSAGE = "Demasiados intentos. Espera unos minutos antes de intentar nuevamente."
USER_EXISTS_MESSAGE = "El usuario ya existe"
INTERNAL_ERROR_MESSAGE = "Error interno del servidor"

_REMOTE_CODE_MESSAGES = {
    "invalid_credentials": INVALID_CREDENTIALS_MESSAGE,
    "email_not_confirmed": EMAIL_NOT_CONFIRMED_MESSAGE,
    "over_request_rate_limit": RATE_LIMITED_MESSAGE,
    "over_email_send_rate_limit": RATE_LIMITED_MESSAGE,
    "user_already_exists": USER_EXISTS_MESSAGE,
    "email_exists": USER_EXISTS_MESSAGE,
}


def user_message(error: AuthError) -> str:
    """Return the short Spanish message shown to end users for ``error``."""
    if isinstance(error, RemoteAuthError):
        mapped = _REMOTE_CODE_MESSAGES.get(error.code or "")
        if mapped:
            return mapped
        if error.status == 429:
            return RATE_LIMITED_MESSAGE
        return error.message or INTERNAL_ERROR_MESSAGE
    if isinstance(error, InputValidationError):
        return error.message
    if isinstance(error, TransportError):
        return INTERNAL_ERROR_MESSAGE
    return error.message


__all__ = [
    "AuthError",
    "AuthErrorKind",
    "EMAIL_NOT_CONFIRMED_MESSAGE",
    "INTERNAL_ERROR_MESSAGE",
    "INVALID_CREDENTIALS_MESSAGE",
    "InputValidationError",
    "ProfileStoreError",
    "RATE_LIMITED_MESSAGE",
    "RemoteAuthError",
    "TransportError",
    "USER_EXISTS_MESSAGE",
    "user_message",
]
