"""Form endpoints for registration, sign-in and sign-out."""

from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Form, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from .config import Settings, get_settings
from .cookies import clear_tokens, get_tokens, set_tokens
from .errors import INTERNAL_ERROR_MESSAGE, AuthError, user_message
from .remote import RemoteAuthClient
from .repositories.profiles import ProfileRepository
from .schemas import Credentials, Registration, UserProfile, issue_messages
from .server_auth import (
    AuthenticatedUser,
    carry_cookies,
    get_remote_client,
    optional_user,
    redirect,
    with_query,
)
from .telemetry import emit_event

router = APIRouter(tags=["auth"])
logger = logging.getLogger(__name__)

ALL_FIELDS_REQUIRED_MESSAGE = "Todos los campos son obligatorios"
PASSWORD_MISMATCH_MESSAGE = "Las contraseñas no coinciden"
CREDENTIALS_REQUIRED_MESSAGE = "Correo electrónico y contraseña obligatorios"
USER_CREATE_ERROR_MESSAGE = "Error al crear el usuario"
PROFILE_CREATE_ERROR_MESSAGE = "Error al crear el perfil del usuario"
SIGNIN_PROCESSING_ERROR_MESSAGE = "Error al procesar el inicio de sesión"
USER_DATA_ERROR_MESSAGE = "Error al obtener los datos del usuario"
REGISTERED_CONFIRM_EMAIL_MESSAGE = "Registro exitoso. Por favor, verifica tu email antes de iniciar sesión."


def _fail(path: str, message: str, event: str, **fields: object) -> RedirectResponse:
    emit_event(event, reason=message, **fields)
    return redirect(with_query(path, error=message))


async def _compensate_registration(remote: RemoteAuthClient, user_id: str) -> bool:
    """Delete an account whose profile row could not be created."""
    try:
        await remote.delete_account(user_id)
    except Exception as exc:  # noqa: BLE001
        logger.error("Could not delete orphaned account %s: %s", user_id, exc)
        deleted = False
    else:
        logger.info("Deleted orphaned account %s", user_id)
        deleted = True
    emit_event("register_compensation", user_id=user_id, deleted=deleted)
    return deleted


@router.post("/auth/register")
async def register(
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form("", alias="confirmPassword"),
    remote: RemoteAuthClient = Depends(get_remote_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    path = settings.register_path
    try:
        if not (name and email and password and confirm_password):
            return _fail(path, ALL_FIELDS_REQUIRED_MESSAGE, "register_failed")
        if password != confirm_password:
            return _fail(path, PASSWORD_MISMATCH_MESSAGE, "register_failed")
        try:
            registration = Registration(
                name=name,
                email=email,
                password=password,
                confirm_password=confirm_password,
            )
        except ValidationError as exc:
            return _fail(path, ", ".join(issue_messages(exc)), "register_failed")

        try:
            result = await remote.sign_up(registration.email, registration.password)
        except AuthError as exc:
            logger.warning("Provider sign-up failed for %s: %s", registration.email, exc)
            return _fail(path, user_message(exc), "register_failed", kind=exc.kind.value)
        if result.user is None:
            return _fail(path, USER_CREATE_ERROR_MESSAGE, "register_failed")

        profile = UserProfile(id=result.user.id, email=registration.email, name=registration.name)
        try:
            await ProfileRepository(remote).create(profile)
        except AuthError as exc:
            logger.error("Error creating profile row for %s: %s", profile.id, exc)
            await _compensate_registration(remote, profile.id)
            return _fail(path, PROFILE_CREATE_ERROR_MESSAGE, "register_failed", user_id=profile.id)

        if result.session is None:
            emit_event("register_succeeded", user_id=profile.id, confirmation_required=True)
            return redirect(with_query(settings.signin_path, message=REGISTERED_CONFIRM_EMAIL_MESSAGE))

        emit_event("register_succeeded", user_id=profile.id, confirmation_required=False)
        response = redirect(settings.onboarding_path)
        set_tokens(response, result.session.access_token, result.session.refresh_token, settings)
        return response
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during registration")
        return _fail(path, INTERNAL_ERROR_MESSAGE, "register_failed")


@router.post("/auth/signin")
async def signin(
    email: str = Form(""),
    password: str = Form(""),
    remote: RemoteAuthClient = Depends(get_remote_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    path = settings.signin_path
    try:
        if not email or not password:
            return _fail(path, CREDENTIALS_REQUIRED_MESSAGE, "signin_failed")
        try:
            credentials = Credentials(email=email, password=password)
        except ValidationError as exc:
            return _fail(path, ", ".join(issue_messages(exc)), "signin_failed")

        try:
            result = await remote.sign_in_with_password(credentials.email, credentials.password)
        except AuthError as exc:
            logger.info("Sign-in rejected for %s: %s", credentials.email, exc)
            return _fail(path, user_message(exc), "signin_failed", kind=exc.kind.value)
        if result.user is None or result.session is None:
            return _fail(path, SIGNIN_PROCESSING_ERROR_MESSAGE, "signin_failed")

        try:
            profile = await ProfileRepository(remote).get(result.user.id)
        except AuthError as exc:
            logger.error("Error getting user data for %s: %s", result.user.id, exc)
            profile = None
        if profile is None:
            return _fail(path, USER_DATA_ERROR_MESSAGE, "signin_failed", user_id=result.user.id)

        emit_event("signin_succeeded", user_id=profile.id)
        response = redirect(settings.onboarding_path)
        set_tokens(response, result.session.access_token, result.session.refresh_token, settings)
        return response
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during sign-in")
        return _fail(path, INTERNAL_ERROR_MESSAGE, "signin_failed")


@router.post("/auth/signout")
async def signout(
    request: Request,
    remote: RemoteAuthClient = Depends(get_remote_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    access_token, _ = get_tokens(request)
    try:
        try:
            await remote.sign_out(access_token)
        except AuthError as exc:
            logger.warning("Provider sign-out failed: %s", exc)
        response = redirect(with_query(settings.signin_path, message="logout-success"))
        remote_ok = True
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during sign-out")
        response = redirect(with_query(settings.signin_path, error="logout-error"))
        remote_ok = False
    clear_tokens(response)
    emit_event("signout_completed", ok=remote_ok)
    return response


@router.get("/auth/signout")
async def signout_redirect(settings: Settings = Depends(get_settings)) -> RedirectResponse:
    response = redirect(settings.signin_path)
    clear_tokens(response)
    return response


@router.get("/api/auth/me", response_model=AuthenticatedUser)
async def me(
    response: Response,
    user: Optional[AuthenticatedUser] = Depends(optional_user),
) -> Union[AuthenticatedUser, JSONResponse]:
    if user is None:
        unauthorized = JSONResponse({"detail": "Not authenticated"}, status_code=status.HTTP_401_UNAUTHORIZED)
        return carry_cookies(response, unauthorized)
    return user


__all__ = ["router"]
