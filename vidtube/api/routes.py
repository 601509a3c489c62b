from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from vidtube.api.schemas import (
    AccountSummary,
    AuthResponse,
    ChannelProfileResponse,
    ChannelStatsResponse,
    CommentResponse,
    Envelope,
    LoginRequest,
    RegisterRequest,
    ToggleResponse,
    TokenRefreshRequest,
    TokenResponse,
    TweetResponse,
    UserResponse,
    ViewResponse,
)
from vidtube.logging import get_logger
from vidtube.service.errors import NotFoundError, RateLimitedError
from vidtube.service.runtime import check_rate_limit, get_runtime
from vidtube.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


@dataclass(frozen=True)
class AuthContext:
    """Identity carried by a verified access token."""

    account_id: str
    username: Optional[str] = None
    email: Optional[str] = None


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally attach the X-RateLimit headers.

    Raises:
        RateLimitedError: when the bucket for ``key`` is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
        )
    return info


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    """Resolve the caller from the Bearer header, falling back to the cookie."""
    runtime = get_runtime()
    token = _bearer_token(authorization) or access_token
    claims = runtime.tokens.verify_short_lived(token)
    return AuthContext(
        account_id=str(claims["sub"]),
        username=claims.get("username"),
        email=claims.get("email"),
    )


def _apply_token_cookies(response: Response, pair: TokenPair, runtime) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_token_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=True, samesite="lax", httponly=True)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


# session lifecycle


@router.post("/users/register", response_model=Envelope, status_code=201, tags=["users"])
async def register(body: RegisterRequest, response: Response):
    """Create an account. No tokens are issued; the client logs in afterwards.

    Raises:
        400: If a required field is missing or malformed
        409: If the username or email is taken
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{(body.email or '').strip().lower()}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    account = await runtime.tokens.register(
        body.username or "",
        body.email or "",
        body.full_name or "",
        body.password or "",
        avatar=body.avatar,
        cover_image=body.cover_image,
    )
    return Envelope(
        status="ok",
        status_code=201,
        data=UserResponse(**account.public_profile()),
        message="user registered successfully",
    )


@router.post("/users/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username or email and password.

    Sets the ``access_token`` and ``refresh_token`` cookies and returns the
    same pair in the body for clients that do not keep cookies.

    Raises:
        401: If the password does not match
        404: If no account matches the login
        429: If rate limit exceeded for this login
    """
    runtime = get_runtime()
    login_id = (body.login or "").strip().lower()
    await _enforce_rate_limit(
        runtime,
        f"login:{login_id}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    account, pair = await runtime.tokens.authenticate(login_id, body.password or "")
    _apply_token_cookies(response, pair, runtime)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse(**account.public_profile()),
            **_token_response(pair).model_dump(),
        ),
        message="user logged in successfully",
    )


@router.post("/users/logout", response_model=Envelope, tags=["users"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.tokens.revoke(principal.account_id)
    _clear_token_cookies(response)
    return Envelope(status="ok", data={}, message="user logged out")


@router.post("/users/refresh-token", response_model=Envelope, tags=["users"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the token pair.

    The refresh token is read from the cookie first, then the body. Any
    previously issued refresh token stops working once this succeeds.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_key(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    presented = refresh_cookie or (body.refresh_token if body else None)
    _, pair = await runtime.tokens.rotate(presented)
    _apply_token_cookies(response, pair, runtime)
    return Envelope(
        status="ok", data=_token_response(pair), message="access token refreshed"
    )


# accounts and channels


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.store.get_account, principal.account_id)
    if not account:
        raise NotFoundError("user does not exist")
    return Envelope(
        status="ok",
        data=UserResponse(**account.public_profile()),
        message="current user fetched successfully",
    )


@router.get("/users/c/{username}", response_model=Envelope, tags=["users"])
async def channel_profile(username: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = await asyncio.to_thread(
        runtime.aggregation.channel_profile, username, principal.account_id
    )
    return Envelope(
        status="ok",
        data=ChannelProfileResponse(**profile),
        message="channel fetched successfully",
    )


@router.get("/users/history", response_model=Envelope, tags=["users"])
async def watch_history(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    history = await asyncio.to_thread(runtime.aggregation.watch_history, principal.account_id)
    return Envelope(status="ok", data=history, message="watch history fetched successfully")


@router.post("/users/history/{video_id}", response_model=Envelope, tags=["users"])
async def record_view(video_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    views = await asyncio.to_thread(
        runtime.relations.record_view, principal.account_id, video_id
    )
    return Envelope(
        status="ok",
        data=ViewResponse(video_id=video_id, views=views),
        message="view recorded",
    )


# subscriptions


@router.post("/subscriptions/c/{channel_id}", response_model=Envelope, tags=["subscriptions"])
async def toggle_subscription(channel_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    subscribed = await asyncio.to_thread(
        runtime.relations.toggle_subscription, principal.account_id, channel_id
    )
    return Envelope(
        status="ok",
        data=ToggleResponse(active=subscribed),
        message="subscribed" if subscribed else "unsubscribed",
    )


@router.get("/subscriptions/c/{channel_id}", response_model=Envelope, tags=["subscriptions"])
async def channel_subscribers(channel_id: str):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.aggregation.channel_subscribers, channel_id)
    return Envelope(
        status="ok",
        data=[AccountSummary(**row) for row in rows],
        message="subscribers fetched successfully",
    )


@router.get("/subscriptions/u/{subscriber_id}", response_model=Envelope, tags=["subscriptions"])
async def subscribed_channels(subscriber_id: str):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.aggregation.subscribed_channels, subscriber_id)
    return Envelope(
        status="ok",
        data=[AccountSummary(**row) for row in rows],
        message="subscribed channels fetched successfully",
    )


# likes


@router.post("/likes/toggle/v/{video_id}", response_model=Envelope, tags=["likes"])
async def toggle_video_like(video_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    liked = await asyncio.to_thread(
        runtime.relations.toggle_video_like, principal.account_id, video_id
    )
    return Envelope(status="ok", data=ToggleResponse(active=liked), message="video like toggled")


@router.post("/likes/toggle/c/{comment_id}", response_model=Envelope, tags=["likes"])
async def toggle_comment_like(comment_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    liked = await asyncio.to_thread(
        runtime.relations.toggle_comment_like, principal.account_id, comment_id
    )
    return Envelope(status="ok", data=ToggleResponse(active=liked), message="comment like toggled")


@router.post("/likes/toggle/t/{tweet_id}", response_model=Envelope, tags=["likes"])
async def toggle_tweet_like(tweet_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    liked = await asyncio.to_thread(
        runtime.relations.toggle_tweet_like, principal.account_id, tweet_id
    )
    return Envelope(status="ok", data=ToggleResponse(active=liked), message="tweet like toggled")


@router.get("/likes/videos", response_model=Envelope, tags=["likes"])
async def liked_videos(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.aggregation.liked_videos, principal.account_id)
    return Envelope(status="ok", data=rows, message="liked videos fetched successfully")


# videos and tweets


@router.get("/videos", response_model=Envelope, tags=["videos"])
async def video_feed(
    page: Optional[str] = Query(None, max_length=12),
    limit: Optional[str] = Query(None, max_length=12),
    query: Optional[str] = Query(None, max_length=200),
    sort_by: Optional[str] = Query(None, max_length=32),
    sort_type: Optional[str] = Query(None, max_length=8),
    user_id: Optional[str] = Query(None, max_length=64),
):
    """List videos with optional search over title and description.

    ``sort_by`` defaults to ``created_at`` and ``sort_type`` to ``desc``;
    ``user_id`` restricts the listing to one channel.
    """
    runtime = get_runtime()
    rows = await asyncio.to_thread(
        runtime.aggregation.video_feed,
        page,
        limit,
        query=query,
        sort_by=sort_by,
        sort_type=sort_type,
        owner_id=user_id,
    )
    return Envelope(status="ok", data=rows, message="videos fetched successfully")


@router.get("/tweets/u/{user_id}", response_model=Envelope, tags=["tweets"])
async def user_tweets(user_id: str):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.aggregation.user_tweets, user_id)
    return Envelope(
        status="ok",
        data=[TweetResponse(**row) for row in rows],
        message="tweets fetched successfully",
    )


# comments


@router.get("/comments/{video_id}", response_model=Envelope, tags=["comments"])
async def video_comments(
    video_id: str,
    page: Optional[str] = Query(None, max_length=12),
    limit: Optional[str] = Query(None, max_length=12),
):
    """List a video's comments, oldest first. ``page`` is 1-indexed."""
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.aggregation.video_comments, video_id, page, limit)
    return Envelope(
        status="ok",
        data=[CommentResponse(**row) for row in rows],
        message="comments fetched successfully",
    )


# dashboard


@router.get("/dashboard/stats", response_model=Envelope, tags=["dashboard"])
async def channel_stats(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = await asyncio.to_thread(runtime.aggregation.channel_stats, principal.account_id)
    return Envelope(
        status="ok",
        data=ChannelStatsResponse(**stats),
        message="channel stats fetched successfully",
    )


@router.get("/dashboard/videos", response_model=Envelope, tags=["dashboard"])
async def dashboard_videos(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.aggregation.dashboard_videos, principal.account_id)
    return Envelope(status="ok", data=rows, message="channel videos fetched successfully")
