from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vidtube.logging import get_correlation_id

MAX_STRING_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "invalid_argument",
    "unauthorized",
    "invalid_token",
    "stale_token",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response envelope; errors carry no data."""

    status: str = Field(..., pattern="^(ok|error)$")
    status_code: int = 200
    data: Optional[Any] = None
    message: str = "success"
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-z0-9_.-]+$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    # presence is checked by TokenService.register
    username: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=254)
    full_name: Optional[str] = Field(default=None, max_length=256)
    password: Optional[str] = Field(default=None, max_length=128)
    avatar: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    cover_image: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return value
        normalized = _normalize_unicode(value.strip().lower())
        if not _USERNAME_PATTERN.match(normalized):
            raise ValueError(
                "username must contain only letters, digits, dots, underscores and hyphens"
            )
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return value
        return _validate_email(value)


class LoginRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=254)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)

    @property
    def login(self) -> Optional[str]:
        return self.username or self.email


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    email: str
    full_name: str
    avatar: Optional[str] = None
    cover_image: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuthResponse(TokenResponse):
    user: UserResponse


class ChannelProfileResponse(BaseModel):
    id: str
    username: str
    full_name: str
    email: str
    avatar: Optional[str] = None
    cover_image: Optional[str] = None
    subscribers_count: int
    channels_subscribed_to_count: int
    is_subscribed: bool


class OwnerSummary(BaseModel):
    id: str
    username: str
    full_name: str
    avatar: Optional[str] = None


class CommentResponse(BaseModel):
    id: str
    content: str
    created_at: datetime
    owner: Optional[OwnerSummary] = None


class TweetResponse(BaseModel):
    id: str
    content: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    owner: OwnerSummary


class AccountSummary(BaseModel):
    id: str
    username: str
    email: str
    full_name: str
    avatar: Optional[str] = None


class ChannelStatsResponse(BaseModel):
    total_videos: int
    total_views: Union[int, float]
    total_likes: int
    total_comments: int
    subscribers: int
    subscribed_to: int
    total_tweets: int


class ToggleResponse(BaseModel):
    active: bool


class ViewResponse(BaseModel):
    video_id: str
    views: int
