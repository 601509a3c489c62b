"""Unit tests for the token lifecycle: registration, login, rotation, revocation."""

import base64
import json
import threading
import time
import uuid

import pytest

from vidtube.config import Settings
from vidtube.service.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidTokenError,
    NotFoundError,
    StaleTokenError,
    UnauthorizedError,
)
from vidtube.service.tokens import TokenService
from vidtube.storage.memory import MemoryStore

PASSWORD = "CorrectHorse42!"


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret",
        refresh_token_secret="unit-refresh-secret",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens(store, settings):
    return TokenService(store, settings)


def _claims(settings, sub, token_type, exp_offset):
    now = int(time.time())
    return {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "sub": sub,
        "iat": now,
        "jti": str(uuid.uuid4()),
        "token_type": token_type,
        "exp": now + exp_offset,
    }


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


async def _register(tokens, username="alice", email="alice@example.com"):
    return await tokens.register(username, email, "Alice Example", PASSWORD)


class TestRegistration:
    async def test_password_is_hashed_with_argon2id(self, tokens):
        account = await _register(tokens)
        assert account.password_hash != PASSWORD
        assert account.password_hash.startswith("$argon2id$")
        assert tokens.verify_password(account, PASSWORD)
        assert not tokens.verify_password(account, "wrong")

    async def test_username_and_email_are_lowercased(self, tokens):
        account = await tokens.register("Alice", "Alice@Example.com", "Alice", PASSWORD)
        assert account.username == "alice"
        assert account.email == "alice@example.com"

    async def test_duplicate_username_conflicts(self, tokens):
        await _register(tokens)
        with pytest.raises(ConflictError) as exc_info:
            await _register(tokens, email="other@example.com")
        assert exc_info.value.status_code == 409
        assert exc_info.value.detail == {"field": "username"}

    async def test_duplicate_email_conflicts(self, tokens):
        await _register(tokens)
        with pytest.raises(ConflictError):
            await _register(tokens, username="other")

    async def test_missing_fields_are_listed(self, tokens):
        with pytest.raises(InvalidArgumentError) as exc_info:
            await tokens.register("bob", "  ", "Bob", "")
        assert exc_info.value.detail == {"missing": ["email", "password"]}


class TestAuthenticate:
    async def test_login_by_username_or_email(self, tokens, store):
        account = await _register(tokens)
        by_name, pair = await tokens.authenticate("alice", PASSWORD)
        assert by_name.id == account.id
        assert store.get_account(account.id).refresh_token == pair.refresh_token

        by_email, _ = await tokens.authenticate("ALICE@example.com", PASSWORD)
        assert by_email.id == account.id

    async def test_unknown_login_is_not_found(self, tokens):
        with pytest.raises(NotFoundError):
            await tokens.authenticate("nobody", PASSWORD)

    async def test_wrong_password_is_unauthorized(self, tokens):
        await _register(tokens)
        with pytest.raises(UnauthorizedError) as exc_info:
            await tokens.authenticate("alice", "not-the-password")
        assert exc_info.value.error_code == "unauthorized"

    async def test_second_login_supersedes_first_refresh_token(self, tokens):
        await _register(tokens)
        _, first = await tokens.authenticate("alice", PASSWORD)
        _, second = await tokens.authenticate("alice", PASSWORD)
        assert first.refresh_token != second.refresh_token
        with pytest.raises(StaleTokenError):
            await tokens.rotate(first.refresh_token)


class TestRotation:
    async def test_rotation_replaces_pair(self, tokens, store):
        account = await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)

        rotated_account, rotated = await tokens.rotate(pair.refresh_token)

        assert rotated_account.id == account.id
        assert rotated.refresh_token != pair.refresh_token
        assert rotated.access_token != pair.access_token
        assert store.get_account(account.id).refresh_token == rotated.refresh_token

    async def test_replayed_refresh_token_is_stale(self, tokens):
        await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        await tokens.rotate(pair.refresh_token)

        with pytest.raises(StaleTokenError) as exc_info:
            await tokens.rotate(pair.refresh_token)
        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "stale_token"

    async def test_missing_token_is_unauthorized(self, tokens):
        with pytest.raises(UnauthorizedError) as exc_info:
            await tokens.rotate(None)
        assert exc_info.value.error_code == "unauthorized"

    async def test_garbage_token_is_invalid(self, tokens):
        with pytest.raises(InvalidTokenError):
            await tokens.rotate("not-a-jwt")

    async def test_access_token_cannot_refresh(self, tokens):
        await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        with pytest.raises(InvalidTokenError):
            await tokens.rotate(pair.access_token)

    async def test_expired_refresh_token_is_invalid(self, tokens, settings):
        account = await _register(tokens)
        expired = tokens._encode_jwt(_claims(settings, account.id, "refresh", -10), "refresh")
        with pytest.raises(InvalidTokenError):
            await tokens.rotate(expired)

    async def test_unknown_subject_is_not_found(self, tokens, settings):
        orphan = tokens._encode_jwt(_claims(settings, str(uuid.uuid4()), "refresh", 600), "refresh")
        with pytest.raises(NotFoundError):
            await tokens.rotate(orphan)

    async def test_signature_checked_before_account_lookup(self, tokens, settings):
        other = TokenService(
            MemoryStore(),
            Settings(access_token_secret="x-access", refresh_token_secret="x-refresh"),
        )
        forged = other._encode_jwt(_claims(settings, str(uuid.uuid4()), "refresh", 600), "refresh")
        with pytest.raises(InvalidTokenError):
            await tokens.rotate(forged)

    async def test_lost_swap_is_stale(self, tokens, store, monkeypatch):
        await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        monkeypatch.setattr(store, "swap_refresh_token", lambda *args: False)
        with pytest.raises(StaleTokenError):
            await tokens.rotate(pair.refresh_token)

    async def test_revoked_token_is_stale(self, tokens):
        account = await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        await tokens.revoke(account.id)
        with pytest.raises(StaleTokenError):
            await tokens.rotate(pair.refresh_token)


class TestShortLivedVerification:
    async def test_access_claims(self, tokens):
        account = await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        claims = tokens.verify_short_lived(pair.access_token)
        assert claims["sub"] == account.id
        assert claims["username"] == "alice"
        assert claims["email"] == "alice@example.com"
        assert claims["token_type"] == "access"

    async def test_refresh_token_rejected_as_access(self, tokens):
        await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        with pytest.raises(InvalidTokenError):
            tokens.verify_short_lived(pair.refresh_token)

    async def test_tampered_payload_rejected(self, tokens, settings):
        account = await _register(tokens)
        _, pair = await tokens.authenticate("alice", PASSWORD)
        header, _, signature = pair.access_token.split(".")
        forged_payload = _b64({**_claims(settings, account.id, "access", 3600), "username": "mallory"})
        with pytest.raises(InvalidTokenError):
            tokens.verify_short_lived(f"{header}.{forged_payload}.{signature}")

    def test_unsigned_token_rejected(self, tokens, settings):
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64(_claims(settings, str(uuid.uuid4()), "access", 3600))
        with pytest.raises(InvalidTokenError):
            tokens.verify_short_lived(f"{header}.{payload}.")

    def test_wrong_audience_rejected(self, tokens, settings):
        claims = {**_claims(settings, str(uuid.uuid4()), "access", 3600), "aud": "someone-else"}
        with pytest.raises(InvalidTokenError):
            tokens.verify_short_lived(tokens._encode_jwt(claims, "access"))

    def test_missing_token_unauthorized(self, tokens):
        with pytest.raises(UnauthorizedError) as exc_info:
            tokens.verify_short_lived(None)
        assert exc_info.value.error_code == "unauthorized"

    def test_clock_skew_leeway(self, store):
        lenient = TokenService(
            store,
            Settings(
                access_token_secret="leeway-access",
                refresh_token_secret="leeway-refresh",
                clock_skew_leeway_seconds=30,
            ),
        )
        recent = lenient._encode_jwt(
            _claims(lenient.settings, str(uuid.uuid4()), "access", -10), "access"
        )
        assert lenient.verify_short_lived(recent)["token_type"] == "access"

    async def test_every_pair_is_unique(self, tokens):
        account = await _register(tokens)
        first = await tokens.issue(account.id)
        second = await tokens.issue(account.id)
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token


class TestOffloadedIO:
    async def test_store_and_hashing_run_off_the_event_loop(self, tokens, store, monkeypatch):
        loop_thread = threading.get_ident()
        seen = []

        def recording(method):
            def wrapper(*args, **kwargs):
                seen.append((method.__name__, threading.get_ident()))
                return method(*args, **kwargs)

            return wrapper

        for name in ("create_account", "get_account_by_login", "get_account", "set_refresh_token"):
            monkeypatch.setattr(store, name, recording(getattr(store, name)))
        monkeypatch.setattr(tokens, "hash_password", recording(tokens.hash_password))

        await _register(tokens)
        await tokens.authenticate("alice", PASSWORD)

        assert {name for name, _ in seen} == {
            "create_account",
            "get_account_by_login",
            "get_account",
            "set_refresh_token",
            "hash_password",
        }
        assert all(thread != loop_thread for _, thread in seen)
