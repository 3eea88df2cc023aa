from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, List, Optional, Tuple

import pytest
from supabase import AuthApiError, PostgrestAPIError

from aula.config import Settings
from aula.errors import ProfileStoreError, RemoteAuthError, TransportError
from aula.remote import AuthChangeEvent, LazyRemoteClient, SupabaseRemoteAuthClient, create_remote_client


class RecordingQuery:
    def __init__(self, data: Optional[List[dict]] = None, error: Optional[Exception] = None) -> None:
        self.operations: List[Tuple[str, Any]] = []
        self._data = data or []
        self._error = error

    def __getattr__(self, name: str):
        def _record(*args: Any) -> "RecordingQuery":
            self.operations.append((name, args))
            return self

        return _record

    async def execute(self) -> SimpleNamespace:
        if self._error is not None:
            raise self._error
        return SimpleNamespace(data=self._data)


class FakeAuth:
    def __init__(self) -> None:
        self.listeners: List[Any] = []
        self.unsubscribed = False

    async def sign_in_with_password(self, credentials: dict) -> SimpleNamespace:
        if credentials["password"] == "wrong":
            raise AuthApiError("Invalid login credentials", 400, "invalid_credentials")
        if credentials["password"] == "offline":
            raise ConnectionError("network unreachable")
        user = SimpleNamespace(id="user-1", email=credentials["email"], created_at=None)
        session = SimpleNamespace(access_token="a", refresh_token="r", expires_at=123, user=user)
        return SimpleNamespace(user=user, session=session)

    def on_auth_state_change(self, callback: Any) -> SimpleNamespace:
        self.listeners.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribed = True

        return SimpleNamespace(unsubscribe=_unsubscribe)


def _adapter(query: Optional[RecordingQuery] = None) -> Tuple[SupabaseRemoteAuthClient, FakeAuth]:
    auth = FakeAuth()
    client = SimpleNamespace(auth=auth, table=lambda name: query)
    settings = Settings(SUPABASE_SERVICE_ROLE_KEY=None)
    return SupabaseRemoteAuthClient(client, settings), auth  # type: ignore[arg-type]


def test_sign_in_maps_session() -> None:
    adapter, _ = _adapter()
    result = asyncio.run(adapter.sign_in_with_password("ana@example.com", "secret1"))
    assert result.user.id == "user-1"
    assert result.session.expires_at == 123
    assert result.session.user.email == "ana@example.com"


def test_provider_errors_keep_their_code() -> None:
    adapter, _ = _adapter()
    with pytest.raises(RemoteAuthError) as excinfo:
        asyncio.run(adapter.sign_in_with_password("ana@example.com", "wrong"))
    assert excinfo.value.code == "invalid_credentials"
    assert excinfo.value.status == 400


def test_unexpected_failures_become_transport_errors() -> None:
    adapter, _ = _adapter()
    with pytest.raises(TransportError):
        asyncio.run(adapter.sign_in_with_password("ana@example.com", "offline"))


def test_select_rows_applies_filters_order_and_limit() -> None:
    query = RecordingQuery(data=[{"id": 1}])
    adapter, _ = _adapter(query)
    rows = asyncio.run(
        adapter.select_rows("topic", "id", filters={"topic_id": ["a", "b"], "level_id": None, "id": 3}, order_by=("id",), limit=5)
    )
    assert rows == [{"id": 1}]
    assert query.operations == [
        ("select", ("id",)),
        ("in_", ("topic_id", ["a", "b"])),
        ("is_", ("level_id", "null")),
        ("eq", ("id", 3)),
        ("order", ("id",)),
        ("limit", (5,)),
    ]


def test_row_errors_become_profile_store_errors() -> None:
    query = RecordingQuery(error=PostgrestAPIError({"message": "permission denied", "code": "42501"}))
    adapter, _ = _adapter(query)
    with pytest.raises(ProfileStoreError):
        asyncio.run(adapter.insert_rows("user", [{"id": "user-1"}]))


def test_auth_state_changes_are_translated() -> None:
    adapter, auth = _adapter()
    received = []
    unsubscribe = adapter.on_auth_state_change(lambda event, session: received.append((event, session)))

    auth.listeners[0]("SIGNED_OUT", None)
    auth.listeners[0]("MFA_CHALLENGE_VERIFIED", None)
    unsubscribe()

    assert received == [(AuthChangeEvent.SIGNED_OUT, None)]
    assert auth.unsubscribed is True


def test_delete_account_requires_service_role_key() -> None:
    adapter, _ = _adapter()
    with pytest.raises(RemoteAuthError) as excinfo:
        asyncio.run(adapter.delete_account("user-1"))
    assert excinfo.value.code == "admin_unavailable"


def test_create_remote_client_requires_configuration() -> None:
    with pytest.raises(TransportError):
        asyncio.run(create_remote_client(Settings(SUPABASE_URL=None, SUPABASE_ANON_KEY=None)))


def test_create_remote_client_wraps_sdk_construction_errors() -> None:
    settings = Settings(SUPABASE_URL="not a url", SUPABASE_ANON_KEY="anon")
    with pytest.raises(TransportError):
        asyncio.run(create_remote_client(settings))


def test_lazy_client_defers_construction_until_first_call() -> None:
    client = LazyRemoteClient(Settings(SUPABASE_URL=None, SUPABASE_ANON_KEY=None), "access-1")
    with pytest.raises(TransportError):
        asyncio.run(client.sign_in_with_password("ana@example.com", "secret1"))
    with pytest.raises(TransportError):
        client.on_auth_state_change(lambda event, session: None)


@pytest.mark.parametrize("delete_fails", [False, True])
def test_delete_account_closes_service_role_client(monkeypatch: pytest.MonkeyPatch, delete_fails: bool) -> None:
    closed: List[bool] = []
    deleted: List[str] = []

    class AdminApi:
        async def delete_user(self, user_id: str) -> None:
            if delete_fails:
                raise RuntimeError("network down")
            deleted.append(user_id)

    class AdminAuth:
        admin = AdminApi()

        async def close(self) -> None:
            closed.append(True)

    async def fake_create_client(url: str, key: str, options=None) -> SimpleNamespace:
        assert key == "service-key"
        return SimpleNamespace(auth=AdminAuth())

    monkeypatch.setattr("aula.remote.acreate_client", fake_create_client)
    settings = Settings(SUPABASE_URL="https://example.supabase.co", SUPABASE_SERVICE_ROLE_KEY="service-key")
    adapter = SupabaseRemoteAuthClient(SimpleNamespace(), settings)  # type: ignore[arg-type]

    if delete_fails:
        with pytest.raises(TransportError):
            asyncio.run(adapter.delete_account("user-1"))
    else:
        asyncio.run(adapter.delete_account("user-1"))
        assert deleted == ["user-1"]
    assert closed == [True]
