from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vidtube.config import Settings
from vidtube.logging import get_logger
from vidtube.service.errors import (
    ConflictError,
    InvalidArgumentError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
    StaleTokenError,
    UnauthorizedError,
)
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import Account

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class CredentialStore(Protocol):
    def create_account(
        self,
        username: str,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_login(self, login: str) -> Optional[Account]: ...

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> bool: ...

    def swap_refresh_token(
        self, account_id: str, expected: str, new_token: Optional[str]
    ) -> bool: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Issues, verifies and rotates the access/refresh token pair.

    Access tokens are stateless and checked by signature and expiry alone.
    Refresh tokens are also persisted on the account: one is valid only while
    it equals the stored value, so issuing a new pair or logging out revokes
    the previous one.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable", account_id=account.id)
            return False

    async def register(
        self,
        username: str,
        email: str,
        full_name: str,
        password: str,
        *,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> Account:
        fields = {
            "username": username,
            "email": email,
            "full_name": full_name,
            "password": password,
        }
        missing = sorted(name for name, value in fields.items() if not (value or "").strip())
        if missing:
            raise InvalidArgumentError(
                "all fields are required", detail={"missing": missing}
            )
        password_hash = await asyncio.to_thread(self.hash_password, password)
        try:
            account = await asyncio.to_thread(
                self.store.create_account,
                username,
                email,
                full_name.strip(),
                password_hash,
                avatar=avatar,
                cover_image=cover_image,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "user with email or username already exists", detail=exc.detail
            ) from exc
        logger.info("account_registered", account_id=account.id)
        return account

    # token lifecycle
    async def issue(self, account_id: str) -> TokenPair:
        """Mint a fresh pair and overwrite the stored refresh token."""
        account = await asyncio.to_thread(self.store.get_account, account_id)
        if not account:
            raise NotFoundError("user does not exist")
        pair = self._mint(account)
        stored = await asyncio.to_thread(
            self.store.set_refresh_token, account.id, pair.refresh_token
        )
        if not stored:
            raise ServerError("failed to persist refresh token")
        logger.info("token_pair_issued", account_id=account.id)
        return pair

    async def authenticate(self, login: str, password: str) -> tuple[Account, TokenPair]:
        if not login or not password:
            raise InvalidArgumentError("username or email and password are required")
        account = await asyncio.to_thread(self.store.get_account_by_login, login)
        if not account:
            raise NotFoundError("user does not exist")
        if not await asyncio.to_thread(self.verify_password, account, password):
            logger.warning("login_password_mismatch", account_id=account.id)
            raise UnauthorizedError("invalid user credentials")
        pair = await self.issue(account.id)
        return account, pair

    async def rotate(self, presented: Optional[str]) -> tuple[Account, TokenPair]:
        if not presented:
            raise UnauthorizedError("unauthorized request")
        claims = self._decode(presented, REFRESH)
        account = await asyncio.to_thread(self.store.get_account, str(claims["sub"]))
        if not account:
            raise NotFoundError("user does not exist")
        stored = account.refresh_token
        if not stored or not hmac.compare_digest(stored.encode(), presented.encode()):
            logger.warning("refresh_token_stale", account_id=account.id)
            raise StaleTokenError("refresh token is expired or used")
        pair = self._mint(account)
        # a concurrent rotation may have replaced the stored value since the read
        swapped = await asyncio.to_thread(
            self.store.swap_refresh_token, account.id, presented, pair.refresh_token
        )
        if not swapped:
            logger.warning("refresh_token_rotation_raced", account_id=account.id)
            raise StaleTokenError("refresh token is expired or used")
        logger.info("token_pair_rotated", account_id=account.id)
        return account, pair

    async def revoke(self, account_id: str) -> None:
        await asyncio.to_thread(self.store.set_refresh_token, account_id, None)
        logger.info("refresh_token_revoked", account_id=account_id)

    def verify_short_lived(self, token: Optional[str]) -> dict[str, Any]:
        """Validate an access token without touching the store."""
        if not token:
            raise UnauthorizedError("unauthorized request")
        return self._decode(token, ACCESS)

    # JWT encoding
    def _secret(self, token_type: str) -> bytes:
        secret = (
            self.settings.access_token_secret
            if token_type == ACCESS
            else self.settings.refresh_token_secret
        )
        return (secret or "").encode()

    def _mint(self, account: Account) -> TokenPair:
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "iat": int(now.timestamp()),
        }
        access_payload = {
            **base,
            "username": account.username,
            "email": account.email,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            **base,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "exp": int(refresh_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, ACCESS),
            refresh_token=self._encode_jwt(refresh_payload, REFRESH),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode(self, token: str, token_type: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, token_type)
        if payload is None:
            raise InvalidTokenError(f"invalid {token_type} token")
        return payload

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
