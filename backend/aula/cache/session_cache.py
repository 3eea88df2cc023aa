"""Client-side cache of "who is logged in", kept in step with local storage and the provider.

Explicit operations (``initialize``, ``login``, ``register``, ``logout``,
``refresh_session``) run one at a time behind an ``asyncio.Lock``. Provider
notifications that arrive while one of them is in flight are queued and
replayed in arrival order once it finishes; otherwise they are applied
synchronously inside the callback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, List, Mapping, Optional, Set, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ..errors import AuthError, InputValidationError, RemoteAuthError, TransportError
from ..remote import AuthChangeEvent, RemoteAuthClient, RemoteSession
from ..repositories.profiles import ProfileRepository
from ..schemas import Credentials, PersistedSession, Registration, SessionTokens, UserProfile, issue_messages
from ..storage import KeyValueStore
from ..telemetry import emit_event

logger = logging.getLogger(__name__)

STORAGE_KEY = "auth-user"

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class SessionSnapshot:
    authenticated: bool
    user: Optional[UserProfile]
    tokens: Optional[SessionTokens]
    loading: bool


SessionListener = Callable[[SessionSnapshot], None]


def _validate(model: Type[M], data: Union[M, Mapping[str, Any]]) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise InputValidationError(issue_messages(exc)) from exc


def _tokens_from(session: Union[RemoteSession, SessionTokens, None]) -> Optional[SessionTokens]:
    if session is None or isinstance(session, SessionTokens):
        return session
    return SessionTokens(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=session.expires_at,
    )


class SessionCache:
    """Single source of truth for the client's authentication state."""

    def __init__(
        self,
        remote: RemoteAuthClient,
        storage: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._remote = remote
        self._storage = storage
        self._profiles = ProfileRepository(remote)
        self._clock = clock
        self._user: Optional[UserProfile] = None
        self._tokens: Optional[SessionTokens] = None
        self._loading = False
        self._initialized = False
        self._init_task: Optional[asyncio.Future[None]] = None
        self._lock = asyncio.Lock()
        self._deferred: List[Tuple[AuthChangeEvent, Optional[RemoteSession]]] = []
        self._unsubscribe_remote: Optional[Callable[[], None]] = None
        self._listeners: List[SessionListener] = []
        self._background: Set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def authenticated(self) -> bool:
        return self._compute_authenticated(self._user, self._tokens)

    @property
    def user(self) -> Optional[UserProfile]:
        return self._user

    @property
    def tokens(self) -> Optional[SessionTokens]:
        return self._tokens

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def initialized(self) -> bool:
        return self._initialized

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            authenticated=self.authenticated,
            user=self._user,
            tokens=self._tokens,
            loading=self._loading,
        )

    def is_logged_in(self) -> bool:
        return self.authenticated

    def get_current_user(self) -> Optional[UserProfile]:
        return self._user

    def get_user_id(self) -> Optional[str]:
        return self._user.id if self._user else None

    def get_user_name(self) -> Optional[str]:
        return self._user.name if self._user else None

    def get_user_email(self) -> Optional[str]:
        return self._user.email if self._user else None

    def has_email(self, email: str) -> bool:
        return self._user is not None and self._user.email == email.strip().lower()

    def get_user_info(self) -> Optional[Dict[str, Optional[str]]]:
        if self._user is None:
            return None
        return {"id": self._user.id, "name": self._user.name, "email": self._user.email}

    def has_stored_auth(self) -> bool:
        return self._storage.get_item(STORAGE_KEY) is not None

    def get_stored_auth_data(self) -> Optional[Dict[str, Any]]:
        raw = self._storage.get_item(STORAGE_KEY)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Observers and lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener`` after every committed state change."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def subscribe_remote(self) -> None:
        """Listen to provider notifications. Safe to call more than once."""
        if self._unsubscribe_remote is not None:
            return
        self._unsubscribe_remote = self._remote.on_auth_state_change(self.handle_auth_event)

    async def start(self) -> None:
        self.subscribe_remote()
        await self.initialize()

    async def teardown(self) -> None:
        """Detach from the provider and drop in-memory state; the persisted copy is kept."""
        if self._unsubscribe_remote is not None:
            try:
                self._unsubscribe_remote()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to unsubscribe from provider notifications")
            self._unsubscribe_remote = None
        self._deferred.clear()
        tasks = list(self._background)
        if self._init_task is not None and not self._init_task.done():
            tasks.append(self._init_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._deferred.clear()
        self._init_task = None
        self._initialized = False
        self._user = None
        self._tokens = None
        self._loading = False

    # ------------------------------------------------------------------
    # Explicit operations
    # ------------------------------------------------------------------

    async def initialize(self, force: bool = False) -> None:
        """Restore the session from storage and the provider; never raises."""
        if self._init_task is None or self._init_task.done():
            if self._initialized and not force:
                return
            self._init_task = asyncio.ensure_future(self._run_initialize())
        task = self._init_task
        await asyncio.wait({task})
        if not task.cancelled():
            task.result()

    async def _run_initialize(self) -> None:
        async with self._exclusive():
            self._set_loading(True)
            persisted = self._load_persisted()
            session: Optional[RemoteSession] = None
            try:
                session = await self._remote.get_session()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Could not read the live session: %s", exc)

            if session is None and persisted is not None and persisted.session is not None:
                try:
                    session = await self._remote.refresh_session(persisted.session.refresh_token)
                except Exception as exc:  # noqa: BLE001
                    logger.info("Stored session could not be refreshed: %s", exc)

            if session is None:
                self._commit(None, None)
                self._initialized = True
                return

            try:
                profile = await self._profiles.require(session.user.id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Session for user %s has no usable profile row: %s", session.user.id, exc)
                self._commit(None, None)
                self._initialized = True
                return

            self._commit(profile, _tokens_from(session))
            self._initialized = True

    async def login(self, credentials: Union[Credentials, Mapping[str, Any]]) -> UserProfile:
        validated = _validate(Credentials, credentials)
        async with self._exclusive():
            self._set_loading(True)
            try:
                result = await self._remote.sign_in_with_password(validated.email, validated.password)
                if result.user is None or result.session is None:
                    raise RemoteAuthError(None, "Error al procesar el inicio de sesión")
                profile = await self._profiles.require(result.user.id)
            except AuthError:
                self._set_loading(False)
                raise
            except Exception as exc:  # noqa: BLE001
                self._set_loading(False)
                raise TransportError(f"Login failed: {exc}") from exc
            self._commit(profile, _tokens_from(result.session))
            self._initialized = True
            logger.info("User %s logged in", profile.id)
            return profile

    async def register(self, registration: Union[Registration, Mapping[str, Any]]) -> UserProfile:
        """Create the account and its profile row.

        When the provider does not return a session (email confirmation
        pending) the cache stays unauthenticated; check ``authenticated``.
        """
        validated = _validate(Registration, registration)
        async with self._exclusive():
            self._set_loading(True)
            try:
                result = await self._remote.sign_up(validated.email, validated.password)
                if result.user is None:
                    raise RemoteAuthError(None, "Error al crear el usuario")
                profile = UserProfile(id=result.user.id, email=validated.email, name=validated.name)
                await self._profiles.create(profile)
            except AuthError:
                self._set_loading(False)
                raise
            except Exception as exc:  # noqa: BLE001
                self._set_loading(False)
                raise TransportError(f"Registration failed: {exc}") from exc

            if result.session is None:
                self._set_loading(False)
                logger.info("User %s registered; email confirmation pending", profile.id)
                return profile

            self._commit(profile, _tokens_from(result.session))
            self._initialized = True
            return profile

    async def logout(self) -> None:
        async with self._exclusive():
            try:
                await self._remote.sign_out()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Remote sign-out failed; clearing local state anyway: %s", exc)
            self._commit(None, None)

    async def refresh_session(self) -> SessionTokens:
        async with self._exclusive():
            current = self._tokens
            if current is None:
                self._commit(None, None)
                raise RemoteAuthError("session_not_found", "No hay una sesión activa")
            try:
                session = await self._remote.refresh_session(current.refresh_token)
            except AuthError:
                self._commit(None, None)
                raise
            except Exception as exc:  # noqa: BLE001
                self._commit(None, None)
                raise TransportError(f"Refresh failed: {exc}") from exc
            tokens = SessionTokens(
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                expires_at=session.expires_at,
            )
            self._commit(self._user, tokens)
            return tokens

    # ------------------------------------------------------------------
    # Direct mutators
    # ------------------------------------------------------------------

    def set_user(self, user: Union[UserProfile, Mapping[str, Any], None]) -> None:
        profile = None if user is None else _validate(UserProfile, user)
        self._commit(profile, self._tokens)

    def set_session(self, session: Union[RemoteSession, SessionTokens, None]) -> None:
        self._commit(self._user, _tokens_from(session))

    def update_user(self, user: Union[UserProfile, Mapping[str, Any]]) -> UserProfile:
        profile = _validate(UserProfile, user)
        self._commit(profile, self._tokens)
        return profile

    def clear(self) -> None:
        self._commit(None, None)

    # ------------------------------------------------------------------
    # Provider notifications
    # ------------------------------------------------------------------

    def handle_auth_event(self, event: AuthChangeEvent, session: Optional[RemoteSession]) -> None:
        if self._lock.locked():
            self._deferred.append((event, session))
            return
        self._apply_event(event, session)

    def _apply_event(self, event: AuthChangeEvent, session: Optional[RemoteSession]) -> None:
        if event == AuthChangeEvent.SIGNED_OUT:
            self._commit(None, None)
        elif event in (AuthChangeEvent.TOKEN_REFRESHED, AuthChangeEvent.USER_UPDATED):
            if session is not None:
                self.set_session(session)
        elif event in (AuthChangeEvent.SIGNED_IN, AuthChangeEvent.INITIAL_SESSION):
            if session is None:
                return
            if self._user is not None and self._user.id == session.user.id:
                self.set_session(session)
            else:
                self._schedule(self.initialize(force=True))
        else:
            logger.debug("Ignoring auth event %s", event.value)

    def _drain_deferred(self) -> None:
        while self._deferred and not self._lock.locked():
            event, session = self._deferred.pop(0)
            self._apply_event(event, session)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; dropping background session refresh")
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        try:
            async with self._lock:
                yield
        finally:
            self._drain_deferred()

    def _load_persisted(self) -> Optional[PersistedSession]:
        raw = self._storage.get_item(STORAGE_KEY)
        if raw is None:
            return None
        try:
            return PersistedSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Discarding invalid persisted session: %s", exc)
            self._storage.remove_item(STORAGE_KEY)
            self._user = None
            self._tokens = None
            return None

    def _set_loading(self, loading: bool) -> None:
        if self._loading == loading:
            return
        self._loading = loading
        self._notify()

    def _compute_authenticated(self, user: Optional[UserProfile], tokens: Optional[SessionTokens]) -> bool:
        return user is not None and tokens is not None and not tokens.is_expired(self._clock())

    def _commit(self, user: Optional[UserProfile], tokens: Optional[SessionTokens]) -> None:
        changed = user != self._user or tokens != self._tokens or self._loading
        self._user = user
        self._tokens = tokens
        self._loading = False

        if user is None:
            self._storage.remove_item(STORAGE_KEY)
        else:
            payload = PersistedSession(user=user, session=tokens)
            self._storage.set_item(STORAGE_KEY, payload.model_dump_json())

        if changed:
            emit_event(
                "session_cache_changed",
                authenticated=self.authenticated,
                user_id=user.id if user else None,
            )
            self._notify()

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Session listener failed")


__all__ = ["STORAGE_KEY", "SessionCache", "SessionListener", "SessionSnapshot"]
