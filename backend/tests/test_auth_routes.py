from __future__ import annotations

import os
from typing import Iterator, List, Tuple
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("AULA_ENV", "development")

from aula.config import Settings, get_settings  # noqa: E402
from aula.errors import INVALID_CREDENTIALS_MESSAGE, USER_EXISTS_MESSAGE, ProfileStoreError, RemoteAuthError  # noqa: E402
from aula.main import app  # noqa: E402
from aula.remote import AuthResult  # noqa: E402
from aula.server_auth import get_remote_client  # noqa: E402
from aula.telemetry import TelemetryEvent, clear_listeners, register_listener  # noqa: E402
from fake_remote import StubRemoteClient, make_session, make_user  # noqa: E402

REGISTRATION = {
    "name": "Ana",
    "email": "ana@example.com",
    "password": "secret1",
    "confirmPassword": "secret1",
}


@pytest.fixture()
def remote() -> Iterator[StubRemoteClient]:
    stub = StubRemoteClient()
    app.dependency_overrides[get_remote_client] = lambda: stub
    yield stub
    app.dependency_overrides.clear()


@pytest.fixture()
def client(remote: StubRemoteClient) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def events() -> Iterator[List[TelemetryEvent]]:
    collected: List[TelemetryEvent] = []
    clear_listeners()
    register_listener(collected.append)
    yield collected
    clear_listeners()


def _location(response) -> Tuple[str, dict]:
    parsed = urlparse(response.headers["location"])
    return parsed.path, {key: values[0] for key, values in parse_qs(parsed.query).items()}


def _set_cookies(response) -> List[str]:
    return response.headers.get_list("set-cookie")


def test_register_password_mismatch_redirects_without_remote_calls(client: TestClient, remote: StubRemoteClient) -> None:
    form = {**REGISTRATION, "password": "abc", "confirmPassword": "xyz"}
    response = client.post("/auth/register", data=form, follow_redirects=False)
    assert response.status_code == 302
    path, query = _location(response)
    assert path == "/register"
    assert "no coinciden" in query["error"]
    assert remote.total_calls() == 0


def test_register_requires_every_field(client: TestClient, remote: StubRemoteClient) -> None:
    response = client.post("/auth/register", data={**REGISTRATION, "name": ""}, follow_redirects=False)
    assert _location(response) == ("/register", {"error": "Todos los campos son obligatorios"})
    assert remote.total_calls() == 0


def test_register_schema_errors_are_joined(client: TestClient, remote: StubRemoteClient) -> None:
    form = {**REGISTRATION, "email": "ana-at-example", "password": "abc", "confirmPassword": "abc"}
    response = client.post("/auth/register", data=form, follow_redirects=False)
    _, query = _location(response)
    assert query["error"] == "Correo electrónico inválido, La contraseña debe tener al menos 6 caracteres"
    assert remote.total_calls() == 0


def test_register_with_session_sets_cookies_and_creates_profile(
    client: TestClient, remote: StubRemoteClient, events: List[TelemetryEvent]
) -> None:
    response = client.post("/auth/register", data=REGISTRATION, follow_redirects=False)
    assert _location(response) == ("/onboarding/level", {})
    cookies = _set_cookies(response)
    assert any(cookie.startswith("sb-access-token=access-1") for cookie in cookies)
    assert any(cookie.startswith("sb-refresh-token=refresh-1") for cookie in cookies)
    assert remote.tables["user"] == [{"id": "user-1", "email": "ana@example.com", "name": "Ana"}]
    assert [event.name for event in events] == ["register_succeeded"]
    assert all("password" not in event.payload for event in events)


def test_register_pending_confirmation_redirects_to_signin(client: TestClient, remote: StubRemoteClient) -> None:
    remote.sign_up_result = AuthResult(user=make_user(), session=None)
    response = client.post("/auth/register", data=REGISTRATION, follow_redirects=False)
    path, query = _location(response)
    assert path == "/signin"
    assert query["message"].startswith("Registro exitoso")
    assert _set_cookies(response) == []


def test_register_maps_existing_user_error(client: TestClient, remote: StubRemoteClient) -> None:
    remote.sign_up_error = RemoteAuthError("user_already_exists", "User already registered", 422)
    response = client.post("/auth/register", data=REGISTRATION, follow_redirects=False)
    assert _location(response) == ("/register", {"error": USER_EXISTS_MESSAGE})


@pytest.mark.parametrize("delete_fails", [False, True])
def test_register_profile_failure_deletes_account(
    client: TestClient, remote: StubRemoteClient, events: List[TelemetryEvent], delete_fails: bool
) -> None:
    remote.row_errors["user"] = ProfileStoreError("insert rejected")
    if delete_fails:
        remote.delete_error = RemoteAuthError("admin_unavailable", "Service role key is not configured")

    response = client.post("/auth/register", data=REGISTRATION, follow_redirects=False)

    assert _location(response) == ("/register", {"error": "Error al crear el perfil del usuario"})
    assert _set_cookies(response) == []
    assert remote.calls["delete_account"] == 1
    assert remote.calls["insert:user"] == 1
    compensation = [event for event in events if event.name == "register_compensation"]
    assert compensation[0].payload == {"user_id": "user-1", "deleted": not delete_fails}


def test_signin_requires_email_and_password(client: TestClient, remote: StubRemoteClient) -> None:
    response = client.post("/auth/signin", data={"email": "ana@example.com"}, follow_redirects=False)
    assert _location(response) == ("/signin", {"error": "Correo electrónico y contraseña obligatorios"})
    assert remote.total_calls() == 0


def test_signin_rejects_malformed_email_before_remote_call(client: TestClient, remote: StubRemoteClient) -> None:
    response = client.post("/auth/signin", data={"email": "nope", "password": "secret1"}, follow_redirects=False)
    assert _location(response) == ("/signin", {"error": "Correo electrónico inválido"})
    assert remote.total_calls() == 0


def test_signin_success_sets_cookie_attributes(client: TestClient, remote: StubRemoteClient) -> None:
    remote.add_profile()
    response = client.post(
        "/auth/signin",
        data={"email": "ana@example.com", "password": "secret1"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert _location(response) == ("/onboarding/level", {})
    cookies = _set_cookies(response)
    assert len(cookies) == 2
    access = next(cookie for cookie in cookies if cookie.startswith("sb-access-token="))
    assert "Max-Age=604800" in access
    assert "Path=/" in access
    assert "SameSite=lax" in access
    assert "HttpOnly" not in access
    assert "Secure" not in access


def test_signin_cookies_are_locked_down_in_production(remote: StubRemoteClient) -> None:
    remote.add_profile()
    app.dependency_overrides[get_settings] = lambda: Settings(AULA_ENV="production")
    try:
        response = TestClient(app).post(
            "/auth/signin",
            data={"email": "ana@example.com", "password": "secret1"},
            follow_redirects=False,
        )
    finally:
        app.dependency_overrides.pop(get_settings, None)
    for cookie in _set_cookies(response):
        assert "HttpOnly" in cookie
        assert "Secure" in cookie


def test_signin_without_profile_row_sets_no_cookies(
    client: TestClient, remote: StubRemoteClient, events: List[TelemetryEvent]
) -> None:
    response = client.post(
        "/auth/signin",
        data={"email": "ana@example.com", "password": "secret1"},
        follow_redirects=False,
    )
    assert _location(response) == ("/signin", {"error": "Error al obtener los datos del usuario"})
    assert _set_cookies(response) == []
    assert events[-1].name == "signin_failed"


def test_signin_maps_invalid_credentials(client: TestClient, remote: StubRemoteClient) -> None:
    remote.sign_in_error = RemoteAuthError("invalid_credentials", "Invalid login credentials", 400)
    response = client.post(
        "/auth/signin",
        data={"email": "ana@example.com", "password": "wrong-pass"},
        follow_redirects=False,
    )
    assert _location(response) == ("/signin", {"error": INVALID_CREDENTIALS_MESSAGE})


def test_signin_incomplete_provider_response(client: TestClient, remote: StubRemoteClient) -> None:
    remote.sign_in_result = AuthResult(user=make_user(), session=None)
    response = client.post(
        "/auth/signin",
        data={"email": "ana@example.com", "password": "secret1"},
        follow_redirects=False,
    )
    assert _location(response) == ("/signin", {"error": "Error al procesar el inicio de sesión"})


def test_signin_unexpected_failure_becomes_internal_error(client: TestClient, remote: StubRemoteClient) -> None:
    remote.sign_in_error = RuntimeError("connection reset")
    response = client.post(
        "/auth/signin",
        data={"email": "ana@example.com", "password": "secret1"},
        follow_redirects=False,
    )
    assert _location(response) == ("/signin", {"error": "Error interno del servidor"})


@pytest.mark.parametrize("provider_fails", [False, True])
def test_signout_clears_cookies(client: TestClient, remote: StubRemoteClient, provider_fails: bool) -> None:
    if provider_fails:
        remote.sign_out_error = RemoteAuthError(None, "session missing")
    client.cookies.set("sb-access-token", "access-1")
    client.cookies.set("sb-refresh-token", "refresh-1")

    response = client.post("/auth/signout", follow_redirects=False)

    assert _location(response) == ("/signin", {"message": "logout-success"})
    assert remote.signed_out_tokens == ["access-1"]
    cleared = _set_cookies(response)
    assert any(cookie.startswith("sb-access-token=") and "Max-Age=0" in cookie for cookie in cleared)
    assert any(cookie.startswith("sb-refresh-token=") and "Max-Age=0" in cookie for cookie in cleared)


def test_signout_unexpected_failure_reports_logout_error(client: TestClient, remote: StubRemoteClient) -> None:
    remote.sign_out_error = RuntimeError("boom")
    response = client.post("/auth/signout", follow_redirects=False)
    assert _location(response) == ("/signin", {"error": "logout-error"})
    assert len(_set_cookies(response)) == 2


def test_get_signout_only_clears_cookies(client: TestClient, remote: StubRemoteClient) -> None:
    response = client.get("/auth/signout", follow_redirects=False)
    assert _location(response) == ("/signin", {})
    assert len(_set_cookies(response)) == 2
    assert remote.total_calls() == 0


def test_me_requires_cookies(client: TestClient) -> None:
    response = client.get("/api/auth/me")
    assert response.status_code == 401


def test_me_returns_cookie_identity(client: TestClient, remote: StubRemoteClient) -> None:
    remote.add_profile()
    remote.users_by_token["access-1"] = make_user()
    client.cookies.set("sb-access-token", "access-1")
    client.cookies.set("sb-refresh-token", "refresh-1")

    response = client.get("/api/auth/me")

    assert response.status_code == 200
    assert response.json() == {
        "id": "user-1",
        "name": "Ana",
        "email": "ana@example.com",
        "created_at": "2024-01-01T00:00:00+00:00",
    }


def test_me_refreshes_rejected_access_token_once(client: TestClient, remote: StubRemoteClient) -> None:
    remote.add_profile()
    remote.refresh_result = make_session(access_token="access-2", refresh_token="refresh-2")
    client.cookies.set("sb-access-token", "stale")
    client.cookies.set("sb-refresh-token", "refresh-1")

    response = client.get("/api/auth/me")

    assert response.status_code == 200
    assert remote.calls["refresh_session"] == 1
    cookies = _set_cookies(response)
    assert any(cookie.startswith("sb-access-token=access-2") for cookie in cookies)
    assert any(cookie.startswith("sb-refresh-token=refresh-2") for cookie in cookies)


def test_me_clears_cookies_when_refresh_fails(client: TestClient, remote: StubRemoteClient) -> None:
    client.cookies.set("sb-access-token", "stale")
    client.cookies.set("sb-refresh-token", "refresh-1")

    response = client.get("/api/auth/me")

    assert response.status_code == 401
    assert all("Max-Age=0" in cookie for cookie in _set_cookies(response))
    assert len(_set_cookies(response)) == 2


@pytest.fixture(params=[{"SUPABASE_URL": None, "SUPABASE_ANON_KEY": None}, {"SUPABASE_URL": "not a url", "SUPABASE_ANON_KEY": "anon"}])
def broken_provider(request) -> Iterator[TestClient]:
    settings = Settings(**request.param)
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_register_mismatch_is_reported_even_when_provider_is_broken(broken_provider: TestClient) -> None:
    form = {**REGISTRATION, "password": "abc", "confirmPassword": "xyz"}
    response = broken_provider.post("/auth/register", data=form, follow_redirects=False)
    path, query = _location(response)
    assert path == "/register"
    assert "no coinciden" in query["error"]


def test_register_with_broken_provider_redirects_with_internal_error(broken_provider: TestClient) -> None:
    response = broken_provider.post("/auth/register", data=REGISTRATION, follow_redirects=False)
    assert response.status_code == 302
    assert _location(response) == ("/register", {"error": "Error interno del servidor"})


def test_signin_with_broken_provider_redirects_with_internal_error(broken_provider: TestClient) -> None:
    response = broken_provider.post(
        "/auth/signin",
        data={"email": "ana@example.com", "password": "secret1"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert _location(response) == ("/signin", {"error": "Error interno del servidor"})
    assert _set_cookies(response) == []


def test_signout_with_broken_provider_still_clears_cookies(broken_provider: TestClient) -> None:
    broken_provider.cookies.set("sb-access-token", "access-1")
    broken_provider.cookies.set("sb-refresh-token", "refresh-1")

    response = broken_provider.post("/auth/signout", follow_redirects=False)

    assert response.status_code == 302
    path, _ = _location(response)
    assert path == "/signin"
    cleared = _set_cookies(response)
    assert any(cookie.startswith("sb-access-token=") and "Max-Age=0" in cookie for cookie in cleared)
    assert any(cookie.startswith("sb-refresh-token=") and "Max-Age=0" in cookie for cookie in cleared)


def test_me_with_broken_provider_keeps_cookies(broken_provider: TestClient) -> None:
    broken_provider.cookies.set("sb-access-token", "access-1")
    broken_provider.cookies.set("sb-refresh-token", "refresh-1")

    response = broken_provider.get("/api/auth/me")

    assert response.status_code == 401
    assert _set_cookies(response) == []
