"""Integration tests for the session lifecycle over HTTP.

Covers registration, login cookies, bearer/cookie authentication, token
rotation with replay detection, and logout.
"""

import pytest
from fastapi.testclient import TestClient

from vidtube import app as app_module

PASSWORD = "TestPassword123!"


def _client():
    # https so the Secure cookies are sent back
    return TestClient(app_module.app, base_url="https://testserver")


@pytest.fixture
def client():
    return _client()


def _register(client, username="alice", password=PASSWORD):
    return client.post(
        "/v1/users/register",
        json={
            "username": username,
            "email": f"{username}@example.com",
            "full_name": username.title(),
            "password": password,
        },
    )


def _login(client, username="alice", password=PASSWORD):
    return client.post("/v1/users/login", json={"username": username, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    """Account creation through POST /v1/users/register."""

    def test_register_creates_account(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["status_code"] == 201
        assert body["error"] is None
        assert body["data"]["username"] == "alice"
        assert "password_hash" not in body["data"]
        assert "refresh_token" not in body["data"]

    def test_duplicate_is_conflict(self, client):
        _register(client)
        response = _register(client)

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"]["code"] == "conflict"
        assert "already exists" in body["error"]["message"]

    def test_missing_fields(self, client):
        response = client.post("/v1/users/register", json={"username": "alice"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_argument"
        assert error["details"]["missing"] == ["email", "full_name", "password"]

    def test_malformed_email(self, client):
        response = client.post(
            "/v1/users/register",
            json={"username": "alice", "email": "nope", "full_name": "A", "password": PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"


class TestLogin:
    """Credential exchange and cookie issuance."""

    def test_login_sets_secure_cookies(self, client):
        _register(client)
        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["username"] == "alice"

        set_cookies = [value.lower() for value in response.headers.get_list("set-cookie")]
        for name in ("access_token", "refresh_token"):
            header = next(value for value in set_cookies if value.startswith(f"{name}="))
            assert "httponly" in header
            assert "secure" in header
            assert "samesite=lax" in header

    def test_login_by_email(self, client):
        _register(client)
        response = client.post(
            "/v1/users/login", json={"email": "ALICE@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200

    def test_wrong_password(self, client):
        _register(client)
        response = _login(client, password="WrongPassword1!")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_user(self, client):
        response = _login(client, username="ghost")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAuthentication:
    """Short-lived token presentation on protected routes."""

    def test_bearer_header(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]
        fresh = _client()

        response = fresh.get("/v1/users/me", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "alice@example.com"

    def test_cookie_fallback(self, client):
        _register(client)
        _login(client)

        response = client.get("/v1/users/me")

        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alice"

    def test_missing_token(self, client):
        response = client.get("/v1/users/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_invalid_token(self, client):
        response = client.get("/v1/users/me", headers=_bearer("abc.def.ghi"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_refresh_token_is_not_an_access_token(self, client):
        _register(client)
        refresh = _login(client).json()["data"]["refresh_token"]
        response = _client().get("/v1/users/me", headers=_bearer(refresh))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestRefresh:
    """Rotation of the long-lived token."""

    def test_rotation_via_cookie(self, client):
        _register(client)
        first = _login(client).json()["data"]

        response = client.post("/v1/users/refresh-token")

        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != first["refresh_token"]
        assert rotated["access_token"] != first["access_token"]
        assert client.cookies.get("refresh_token") == rotated["refresh_token"]

    def test_replayed_token_is_stale(self, client):
        _register(client)
        first = _login(client).json()["data"]
        assert client.post("/v1/users/refresh-token").status_code == 200

        replay = _client().post(
            "/v1/users/refresh-token", json={"refresh_token": first["refresh_token"]}
        )

        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "stale_token"

    def test_body_token_when_no_cookie(self, client):
        _register(client)
        first = _login(client).json()["data"]

        response = _client().post(
            "/v1/users/refresh-token", json={"refresh_token": first["refresh_token"]}
        )

        assert response.status_code == 200

    def test_missing_refresh_token(self, client):
        response = client.post("/v1/users/refresh-token")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_access_token_rejected_for_refresh(self, client):
        _register(client)
        access = _login(client).json()["data"]["access_token"]
        response = _client().post("/v1/users/refresh-token", json={"refresh_token": access})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestLogout:
    def test_logout_revokes_refresh_and_clears_cookies(self, client):
        _register(client)
        tokens = _login(client).json()["data"]

        response = client.post("/v1/users/logout", headers=_bearer(tokens["access_token"]))

        assert response.status_code == 200
        cleared = [value.lower() for value in response.headers.get_list("set-cookie")]
        for name in ("access_token", "refresh_token"):
            assert any(value.startswith(f"{name}=") and "max-age=0" in value for value in cleared)

        replay = _client().post(
            "/v1/users/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "stale_token"

    def test_access_token_stays_valid_until_expiry(self, client):
        _register(client)
        tokens = _login(client).json()["data"]
        _client().post("/v1/users/logout", headers=_bearer(tokens["access_token"]))

        response = _client().get("/v1/users/me", headers=_bearer(tokens["access_token"]))

        assert response.status_code == 200

    def test_logout_requires_auth(self, client):
        response = client.post("/v1/users/logout")
        assert response.status_code == 401
