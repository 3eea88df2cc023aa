"""Contract and Supabase adapter for the hosted auth/database provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, TypeVar

from supabase import (
    AsyncClient,
    AuthApiError,
    AuthError as SupabaseAuthError,
    PostgrestAPIError,
    acreate_client,
)
from supabase.lib.client_options import AsyncClientOptions

from .config import Settings
from .errors import AuthError, ProfileStoreError, RemoteAuthError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthChangeEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True)
class RemoteUser:
    id: str
    email: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class RemoteSession:
    access_token: str
    refresh_token: str
    user: RemoteUser
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class AuthResult:
    user: Optional[RemoteUser]
    session: Optional[RemoteSession]


AuthChangeCallback = Callable[[AuthChangeEvent, Optional[RemoteSession]], None]
Filters = Mapping[str, Any]


class RemoteAuthClient(Protocol):
    """Operations the session cache and request handlers need from the provider.

    Auth calls raise ``RemoteAuthError`` when the provider rejects them and
    ``TransportError`` for anything else; row calls raise ``ProfileStoreError``.
    Filter values that are lists become ``IN`` filters, ``None`` matches NULL.
    """

    async def sign_up(self, email: str, password: str) -> AuthResult:  # pragma: no cover - protocol definition
        ...

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:  # pragma: no cover
        ...

    async def sign_out(self, access_token: Optional[str] = None) -> None:  # pragma: no cover
        ...

    async def get_session(self) -> Optional[RemoteSession]:  # pragma: no cover
        ...

    async def refresh_session(self, refresh_token: str) -> RemoteSession:  # pragma: no cover
        ...

    async def get_user(self, access_token: str) -> Optional[RemoteUser]:  # pragma: no cover
        ...

    async def delete_account(self, user_id: str) -> None:  # pragma: no cover
        ...

    def on_auth_state_change(self, callback: AuthChangeCallback) -> Callable[[], None]:  # pragma: no cover
        ...

    async def select_rows(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:  # pragma: no cover
        ...

    async def insert_rows(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:  # pragma: no cover
        ...

    async def update_rows(self, table: str, values: Mapping[str, Any], filters: Filters) -> List[Dict[str, Any]]:  # pragma: no cover
        ...

    async def delete_rows(self, table: str, filters: Filters) -> List[Dict[str, Any]]:  # pragma: no cover
        ...


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _to_remote_user(user: Any) -> Optional[RemoteUser]:
    if user is None:
        return None
    return RemoteUser(id=str(user.id), email=getattr(user, "email", None), created_at=_iso(getattr(user, "created_at", None)))


def _to_remote_session(session: Any) -> Optional[RemoteSession]:
    if session is None:
        return None
    user = _to_remote_user(getattr(session, "user", None))
    if user is None:
        return None
    return RemoteSession(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=getattr(session, "expires_at", None),
        user=user,
    )


def _apply_filters(query: Any, filters: Optional[Filters]) -> Any:
    for column, value in (filters or {}).items():
        if value is None:
            query = query.is_(column, "null")
        elif isinstance(value, (list, tuple, set)):
            query = query.in_(column, list(value))
        else:
            query = query.eq(column, value)
    return query


class SupabaseRemoteAuthClient:
    """``RemoteAuthClient`` backed by ``supabase.AsyncClient``."""

    def __init__(self, client: AsyncClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    async def _auth_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except AuthApiError as exc:
            code = getattr(exc, "code", None)
            logger.info("Provider rejected %s (code=%s, status=%s)", operation, code, exc.status)
            raise RemoteAuthError(code, exc.message, exc.status) from exc
        except SupabaseAuthError as exc:
            raise RemoteAuthError(getattr(exc, "code", None), exc.message, getattr(exc, "status", None)) from exc
        except AuthError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Transport failure during %s: %s", operation, exc)
            raise TransportError(f"{operation} failed: {exc}") from exc

    async def _execute(self, table: str, query: Any) -> List[Dict[str, Any]]:
        try:
            response = await query.execute()
        except PostgrestAPIError as exc:
            raise ProfileStoreError(f"Row operation on '{table}' failed: {exc.message}") from exc
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"Row operation on '{table}' failed: {exc}") from exc
        if response is None:
            return []
        return list(response.data or [])

    async def sign_up(self, email: str, password: str) -> AuthResult:
        response = await self._auth_call("sign_up", self._client.auth.sign_up({"email": email, "password": password}))
        return AuthResult(user=_to_remote_user(response.user), session=_to_remote_session(response.session))

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        response = await self._auth_call(
            "sign_in_with_password",
            self._client.auth.sign_in_with_password({"email": email, "password": password}),
        )
        return AuthResult(user=_to_remote_user(response.user), session=_to_remote_session(response.session))

    async def sign_out(self, access_token: Optional[str] = None) -> None:
        if access_token:
            await self._auth_call("sign_out", self._client.auth.admin.sign_out(access_token))
            return
        await self._auth_call("sign_out", self._client.auth.sign_out())

    async def get_session(self) -> Optional[RemoteSession]:
        session = await self._auth_call("get_session", self._client.auth.get_session())
        return _to_remote_session(session)

    async def refresh_session(self, refresh_token: str) -> RemoteSession:
        response = await self._auth_call("refresh_session", self._client.auth.refresh_session(refresh_token))
        session = _to_remote_session(response.session)
        if session is None:
            raise RemoteAuthError("session_not_found", "Refresh did not return a session")
        return session

    async def get_user(self, access_token: str) -> Optional[RemoteUser]:
        response = await self._auth_call("get_user", self._client.auth.get_user(access_token))
        if response is None:
            return None
        return _to_remote_user(response.user)

    async def delete_account(self, user_id: str) -> None:
        service_key = self._settings.supabase_service_role_key
        if not service_key or not self._settings.supabase_url:
            raise RemoteAuthError("admin_unavailable", "Service role key is not configured")
        try:
            admin = await acreate_client(
                self._settings.supabase_url,
                service_key,
                options=AsyncClientOptions(auto_refresh_token=False, persist_session=False),
            )
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"Could not build the service-role client: {exc}") from exc
        try:
            await self._auth_call("delete_account", admin.auth.admin.delete_user(user_id))
        finally:
            # the admin API shares the auth client's HTTP transport
            try:
                await admin.auth.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to close the service-role client: %s", exc)

    def on_auth_state_change(self, callback: AuthChangeCallback) -> Callable[[], None]:
        def _forward(event: str, session: Any) -> None:
            try:
                change = AuthChangeEvent(event)
            except ValueError:
                logger.debug("Ignoring unknown auth event %s", event)
                return
            callback(change, _to_remote_session(session))

        subscription = self._client.auth.on_auth_state_change(_forward)
        return subscription.unsubscribe

    async def select_rows(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = _apply_filters(self._client.table(table).select(columns), filters)
        for column in order_by:
            query = query.order(column)
        if limit is not None:
            query = query.limit(limit)
        return await self._execute(table, query)

    async def insert_rows(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        payload = [dict(row) for row in rows]
        return await self._execute(table, self._client.table(table).insert(payload))

    async def update_rows(self, table: str, values: Mapping[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        query = _apply_filters(self._client.table(table).update(dict(values)), filters)
        return await self._execute(table, query)

    async def delete_rows(self, table: str, filters: Filters) -> List[Dict[str, Any]]:
        query = _apply_filters(self._client.table(table).delete(), filters)
        return await self._execute(table, query)


async def create_remote_client(settings: Settings, access_token: Optional[str] = None) -> SupabaseRemoteAuthClient:
    """Build a fresh, non-persisting client; ``access_token`` scopes row access to that user."""
    if not settings.remote_configured:
        raise TransportError("SUPABASE_URL and SUPABASE_ANON_KEY must be configured.")
    options = AsyncClientOptions(auto_refresh_token=False, persist_session=False)
    if access_token:
        options.headers["Authorization"] = f"Bearer {access_token}"
    try:
        client = await acreate_client(settings.supabase_url, settings.supabase_anon_key, options=options)
        if access_token:
            client.postgrest.auth(access_token)
    except Exception as exc:  # noqa: BLE001
        logger.error("Could not build the provider client: %s", exc)
        raise TransportError(f"Could not build the provider client: {exc}") from exc
    return SupabaseRemoteAuthClient(client, settings)


class LazyRemoteClient:
    """Builds the provider client on first use.

    Request handlers receive this so that a missing or broken provider
    configuration surfaces as ``TransportError`` inside the handler rather
    than while FastAPI resolves dependencies.
    """

    def __init__(self, settings: Settings, access_token: Optional[str] = None) -> None:
        self._settings = settings
        self._access_token = access_token
        self._client: Optional[SupabaseRemoteAuthClient] = None

    async def connect(self) -> SupabaseRemoteAuthClient:
        if self._client is None:
            self._client = await create_remote_client(self._settings, self._access_token)
        return self._client

    async def sign_up(self, email: str, password: str) -> AuthResult:
        return await (await self.connect()).sign_up(email, password)

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        return await (await self.connect()).sign_in_with_password(email, password)

    async def sign_out(self, access_token: Optional[str] = None) -> None:
        await (await self.connect()).sign_out(access_token)

    async def get_session(self) -> Optional[RemoteSession]:
        return await (await self.connect()).get_session()

    async def refresh_session(self, refresh_token: str) -> RemoteSession:
        return await (await self.connect()).refresh_session(refresh_token)

    async def get_user(self, access_token: str) -> Optional[RemoteUser]:
        return await (await self.connect()).get_user(access_token)

    async def delete_account(self, user_id: str) -> None:
        await (await self.connect()).delete_account(user_id)

    def on_auth_state_change(self, callback: AuthChangeCallback) -> Callable[[], None]:
        if self._client is None:
            raise TransportError("Provider client is not connected yet; await connect() first.")
        return self._client.on_auth_state_change(callback)

    async def select_rows(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Sequence[str] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await (await self.connect()).select_rows(table, columns, filters, order_by, limit)

    async def insert_rows(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return await (await self.connect()).insert_rows(table, rows)

    async def update_rows(self, table: str, values: Mapping[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        return await (await self.connect()).update_rows(table, values, filters)

    async def delete_rows(self, table: str, filters: Filters) -> List[Dict[str, Any]]:
        return await (await self.connect()).delete_rows(table, filters)


__all__ = [
    "AuthChangeCallback",
    "AuthChangeEvent",
    "AuthResult",
    "LazyRemoteClient",
    "RemoteAuthClient",
    "RemoteSession",
    "RemoteUser",
    "SupabaseRemoteAuthClient",
    "create_remote_client",
]
