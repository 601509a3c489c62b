import pytest
from fastapi.testclient import TestClient

from vidtube import app as app_module
from vidtube.service.runtime import check_rate_limit, get_runtime, reset_runtime_for_tests

PASSWORD = "TestPassword123!"


class TestLocalBucket:
    """Token bucket used when Redis is not configured."""

    async def test_limit_exhausts_then_rejects(self):
        runtime = get_runtime()
        assert runtime.cache is None

        first = await check_rate_limit(runtime, "login:alice", 2, 60, return_remaining=True)
        second = await check_rate_limit(runtime, "login:alice", 2, 60, return_remaining=True)
        third = await check_rate_limit(runtime, "login:alice", 2, 60, return_remaining=True)

        assert first == (True, 1, 0)
        assert second == (True, 0, 0)
        allowed, remaining, reset_seconds = third
        assert allowed is False
        assert remaining == 0
        assert 0 < reset_seconds <= 30

    async def test_keys_are_independent(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "login:alice", 1, 60)
        assert not await check_rate_limit(runtime, "login:alice", 1, 60)
        assert await check_rate_limit(runtime, "login:bob", 1, 60)

    async def test_non_positive_limit_disables(self):
        runtime = get_runtime()
        for _ in range(5):
            assert await check_rate_limit(runtime, "any", 0, 60)

    async def test_invalid_window_defaults(self):
        runtime = get_runtime()
        allowed, remaining, _ = await check_rate_limit(
            runtime, "window", 3, 0, return_remaining=True
        )
        assert allowed is True
        assert remaining == 2


class TestEndpointLimits:
    @pytest.fixture
    def client(self, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()
        return TestClient(app_module.app, base_url="https://testserver")

    def test_login_limit_returns_429(self, client):
        client.post(
            "/v1/users/register",
            json={
                "username": "alice",
                "email": "alice@example.com",
                "full_name": "Alice",
                "password": PASSWORD,
            },
        )
        login = {"username": "alice", "password": PASSWORD}

        ok = client.post("/v1/users/login", json=login)
        assert ok.status_code == 200
        assert ok.headers["X-RateLimit-Limit"] == "2"
        assert ok.headers["X-RateLimit-Remaining"] == "1"

        assert client.post("/v1/users/login", json=login).status_code == 200
        limited = client.post("/v1/users/login", json=login)

        assert limited.status_code == 429
        body = limited.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) >= 1

    def test_limit_is_per_login(self, client):
        for _ in range(2):
            client.post("/v1/users/login", json={"username": "ghost", "password": PASSWORD})
        response = client.post("/v1/users/login", json={"username": "other", "password": PASSWORD})
        assert response.status_code == 404
