"""Validated shapes for profiles, credentials, session tokens and onboarding preferences."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic.networks import validate_email
from pydantic_core import PydanticCustomError

NAME_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 6


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Any, code: str, message: str) -> str:
    if value is None:
        raise PydanticCustomError(code, message)
    if not isinstance(value, str):
        value = str(value)
    trimmed = value.strip()
    if not trimmed:
        raise PydanticCustomError(code, message)
    return trimmed


def _normalize_email(value: Any) -> str:
    email = _require_text(value, "email_required", "El correo electrónico es obligatorio")
    try:
        _, address = validate_email(email)
    except PydanticCustomError as exc:
        raise PydanticCustomError("email_invalid", "Correo electrónico inválido") from exc
    return address.lower()


class UserProfile(BaseModel):
    """Application-owned profile row, keyed by the provider's user id."""

    id: str = Field(..., min_length=1)
    email: Optional[str] = None
    name: str

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return _normalize_email(value)

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        name = _require_text(value, "name_required", "El nombre es obligatorio")
        if len(name) > NAME_MAX_LENGTH:
            raise PydanticCustomError("name_too_long", "El nombre no puede superar los 100 caracteres")
        return name


class SessionTokens(BaseModel):
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_at: Optional[int] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at <= current


class Credentials(BaseModel):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return _normalize_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        if value is None or value == "":
            raise PydanticCustomError("password_required", "La contraseña es obligatoria")
        return str(value)


class Registration(BaseModel):
    name: str
    email: str
    password: str
    confirm_password: str

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        name = _require_text(value, "name_required", "El nombre es obligatorio")
        if len(name) > NAME_MAX_LENGTH:
            raise PydanticCustomError("name_too_long", "El nombre no puede superar los 100 caracteres")
        return name

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return _normalize_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        if value is None or value == "":
            raise PydanticCustomError("password_required", "La contraseña es obligatoria")
        password = str(value)
        if len(password) < PASSWORD_MIN_LENGTH:
            raise PydanticCustomError(
                "password_too_short",
                "La contraseña debe tener al menos {min_length} caracteres",
                {"min_length": PASSWORD_MIN_LENGTH},
            )
        return password

    @model_validator(mode="after")
    def _passwords_match(self) -> "Registration":
        if self.password != self.confirm_password:
            raise PydanticCustomError("password_mismatch", "Las contraseñas no coinciden")
        return self

    def credentials(self) -> Credentials:
        return Credentials(email=self.email, password=self.password)


class ProficiencyLevel(str, Enum):
    BEGINNER = "beginner"
    ELEMENTARY = "elementary"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class UserPreferences(BaseModel):
    level: ProficiencyLevel
    topic: str = Field(..., min_length=1)
    completed_onboarding: bool = False
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class PersistedSession(BaseModel):
    """Payload stored under the ``auth-user`` local-storage key."""

    user: UserProfile
    session: Optional[SessionTokens] = None


def issue_messages(exc: ValidationError) -> List[str]:
    """Flatten a pydantic validation error into user-facing messages."""
    messages: List[str] = []
    for issue in exc.errors():
        message = str(issue.get("msg") or "").strip()
        if message and message not in messages:
            messages.append(message)
    return messages


__all__ = [
    "Credentials",
    "NAME_MAX_LENGTH",
    "PASSWORD_MIN_LENGTH",
    "PersistedSession",
    "ProficiencyLevel",
    "Registration",
    "SessionTokens",
    "UserPreferences",
    "UserProfile",
    "issue_messages",
]
