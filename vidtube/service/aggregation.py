from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from vidtube.logging import get_logger
from vidtube.service.errors import InvalidArgumentError, NotFoundError
from vidtube.service.validation import parse_pagination, require_uuid
from vidtube.storage.pipeline import (
    Count,
    First,
    Group,
    Limit,
    Lookup,
    Match,
    NotNull,
    Pipeline,
    Project,
    Search,
    Skip,
    Sort,
    Sum,
    Unwind,
)

logger = get_logger(__name__)

OWNER_SUMMARY = {
    "id": "owner.id",
    "username": "owner.username",
    "full_name": "owner.full_name",
    "avatar": "owner.avatar",
}

_VIDEO_SUMMARY = {
    "id": "id",
    "title": "title",
    "description": "description",
    "video_file": "video_file",
    "thumbnail": "thumbnail",
    "duration": "duration",
    "views": "views",
    "created_at": "created_at",
}

FEED_SORT_FIELDS = ("created_at", "updated_at", "title", "views", "duration")

_STAT_FIELDS = (
    "total_videos",
    "total_views",
    "total_likes",
    "total_comments",
    "subscribers",
    "subscribed_to",
    "total_tweets",
)


class AggregateStore(Protocol):
    def aggregate(self, pipeline: Pipeline) -> List[Dict[str, Any]]: ...


def _public_account(prefix: str) -> Dict[str, str]:
    return {
        "id": f"{prefix}.id",
        "username": f"{prefix}.username",
        "email": f"{prefix}.email",
        "full_name": f"{prefix}.full_name",
        "avatar": f"{prefix}.avatar",
    }


def _as_number(value: Any) -> int | float:
    if value is None:
        return 0
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _drop_empty_owner(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    for row in rows:
        owner = row.get("owner")
        if isinstance(owner, dict) and owner.get("id") is None:
            row["owner"] = None
    return rows


class AggregationService:
    """Derived read-only views joined across the document collections.

    Every view is a single pipeline evaluated by the store; counts and sums
    are computed inside the pipeline rather than by loading related rows.
    """

    def __init__(
        self, store: AggregateStore, *, default_page_size: int = 10, max_page_size: int = 100
    ) -> None:
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def channel_profile(self, username: str, viewer_id: Optional[str] = None) -> Dict[str, Any]:
        handle = (username or "").strip().lower()
        if not handle:
            raise NotFoundError("channel does not exist")
        stages = [
            Match({"username": handle}),
            Lookup("subscriptions", "id", "channel", "subscribers_count", mode="count"),
            Lookup(
                "subscriptions", "id", "subscriber", "channels_subscribed_to_count", mode="count"
            ),
        ]
        if viewer_id:
            stages.append(
                Lookup(
                    "subscriptions",
                    "id",
                    "channel",
                    "is_subscribed",
                    pipeline=(Match({"subscriber": viewer_id}),),
                    mode="exists",
                )
            )
        stages.append(
            Project(
                {
                    "id": "id",
                    "username": "username",
                    "full_name": "full_name",
                    "email": "email",
                    "avatar": "avatar",
                    "cover_image": "cover_image",
                    "subscribers_count": "subscribers_count",
                    "channels_subscribed_to_count": "channels_subscribed_to_count",
                    "is_subscribed": "is_subscribed",
                }
            )
        )
        rows = self.store.aggregate(Pipeline("accounts", tuple(stages)))
        if not rows:
            raise NotFoundError("channel does not exist")
        profile = rows[0]
        profile["is_subscribed"] = bool(profile.get("is_subscribed"))
        return profile

    def channel_stats(self, owner_id: str) -> Dict[str, Any]:
        """Totals for a channel, aggregated over the owner's videos in one pass."""
        owner_id = require_uuid(owner_id, "owner id")
        pipeline = Pipeline(
            "videos",
            (
                Match({"owner": owner_id}),
                Lookup("likes", "id", "video", "likes", mode="count"),
                Lookup("comments", "id", "video", "comments", mode="count"),
                Lookup("subscriptions", "owner", "channel", "subscribers", mode="count"),
                Lookup("subscriptions", "owner", "subscriber", "subscribed_to", mode="count"),
                Lookup("tweets", "owner", "owner", "tweets", mode="count"),
                Group(
                    {
                        "total_videos": Count(),
                        "total_views": Sum("views"),
                        "total_likes": Sum("likes"),
                        "total_comments": Sum("comments"),
                        "subscribers": First("subscribers"),
                        "subscribed_to": First("subscribed_to"),
                        "total_tweets": First("tweets"),
                    }
                ),
            ),
        )
        rows = self.store.aggregate(pipeline)
        totals = rows[0] if rows else {}
        return {name: _as_number(totals.get(name)) for name in _STAT_FIELDS}

    def video_comments(self, video_id: str, page: Any = None, limit: Any = None) -> List[Dict[str, Any]]:
        """Comments on a video, oldest first, 1-indexed pages.

        An empty first page means the video has no comments and raises
        NotFoundError; a later page past the end is simply empty.
        """
        video_id = require_uuid(video_id, "video id")
        page_number, page_size = parse_pagination(
            page,
            limit,
            default_limit=self.default_page_size,
            max_limit=self.max_page_size,
        )
        pipeline = Pipeline(
            "comments",
            (
                Match({"video": video_id}),
                Skip((page_number - 1) * page_size),
                Limit(page_size),
                Lookup("accounts", "owner", "id", "owner"),
                # comments whose owner is gone still fill their page slot
                Unwind("owner", preserve_empty=True),
                Project(
                    {
                        "id": "id",
                        "content": "content",
                        "created_at": "created_at",
                        "owner": OWNER_SUMMARY,
                    }
                ),
            ),
        )
        rows = _drop_empty_owner(self.store.aggregate(pipeline))
        if not rows and page_number == 1:
            raise NotFoundError("no comments found for this video")
        return rows

    def liked_videos(self, viewer_id: str) -> List[Dict[str, Any]]:
        viewer_id = require_uuid(viewer_id, "user id")
        pipeline = Pipeline(
            "likes",
            (
                Match({"liked_by": viewer_id, "video": NotNull()}),
                Lookup("videos", "video", "id", "liked_video"),
                Unwind("liked_video"),
                Project(
                    {
                        "id": "liked_video.id",
                        "video_file": "liked_video.video_file",
                        "thumbnail": "liked_video.thumbnail",
                        "title": "liked_video.title",
                        "duration": "liked_video.duration",
                        "views": "liked_video.views",
                        "is_published": "liked_video.is_published",
                        "created_at": "liked_video.created_at",
                        "liked_at": "created_at",
                    }
                ),
            ),
        )
        return self.store.aggregate(pipeline)

    def watch_history(self, viewer_id: str) -> List[Dict[str, Any]]:
        viewer_id = require_uuid(viewer_id, "user id")
        pipeline = Pipeline(
            "accounts",
            (
                Match({"id": viewer_id}),
                Lookup(
                    "videos",
                    "watch_history",
                    "id",
                    "history",
                    many_local=True,
                    pipeline=(
                        Lookup("accounts", "owner", "id", "owner"),
                        Unwind("owner"),
                        Project({**_VIDEO_SUMMARY, "owner": OWNER_SUMMARY}),
                    ),
                ),
                Project({"history": "history"}),
            ),
        )
        rows = self.store.aggregate(pipeline)
        if not rows:
            raise NotFoundError("user does not exist")
        return rows[0].get("history") or []

    def channel_subscribers(self, channel_id: str) -> List[Dict[str, Any]]:
        channel_id = require_uuid(channel_id, "channel id")
        pipeline = Pipeline(
            "subscriptions",
            (
                Match({"channel": channel_id}),
                Lookup("accounts", "subscriber", "id", "subscriber"),
                Unwind("subscriber"),
                Project(_public_account("subscriber")),
            ),
        )
        return self.store.aggregate(pipeline)

    def subscribed_channels(self, subscriber_id: str) -> List[Dict[str, Any]]:
        subscriber_id = require_uuid(subscriber_id, "subscriber id")
        pipeline = Pipeline(
            "subscriptions",
            (
                Match({"subscriber": subscriber_id}),
                Lookup("accounts", "channel", "id", "channel"),
                Unwind("channel"),
                Project(_public_account("channel")),
            ),
        )
        return self.store.aggregate(pipeline)

    def dashboard_videos(self, owner_id: str) -> List[Dict[str, Any]]:
        """The owner's videos, newest first, with like and comment counts."""
        owner_id = require_uuid(owner_id, "owner id")
        pipeline = Pipeline(
            "videos",
            (
                Match({"owner": owner_id}),
                Lookup("likes", "id", "video", "likes_count", mode="count"),
                Lookup("comments", "id", "video", "comments_count", mode="count"),
                Sort((("created_at", -1),)),
                Project(
                    {
                        **_VIDEO_SUMMARY,
                        "is_published": "is_published",
                        "likes_count": "likes_count",
                        "comments_count": "comments_count",
                    }
                ),
            ),
        )
        return self.store.aggregate(pipeline)

    def video_feed(
        self,
        page: Any = None,
        limit: Any = None,
        *,
        query: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_type: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Paginated video listing with optional search and owner filter.

        ``query`` is matched case-insensitively against title and
        description. Sorting happens before pagination; ties keep upload
        order. A page past the end is empty rather than an error.
        """
        page_number, page_size = parse_pagination(
            page,
            limit,
            default_limit=self.default_page_size,
            max_limit=self.max_page_size,
        )
        sort_field = (sort_by or "created_at").strip()
        if sort_field not in FEED_SORT_FIELDS:
            raise InvalidArgumentError(
                f"sort_by must be one of {', '.join(FEED_SORT_FIELDS)}",
                detail={"field": "sort_by"},
            )
        direction = (sort_type or "desc").strip().lower()
        if direction not in ("asc", "desc"):
            raise InvalidArgumentError(
                "sort_type must be asc or desc", detail={"field": "sort_type"}
            )

        stages: List[Any] = []
        if owner_id:
            stages.append(Match({"owner": require_uuid(owner_id, "user id")}))
        text = (query or "").strip()
        if text:
            stages.append(Search(("title", "description"), text))
        stages.extend(
            [
                Sort(((sort_field, 1 if direction == "asc" else -1),)),
                Skip((page_number - 1) * page_size),
                Limit(page_size),
                Lookup("accounts", "owner", "id", "owner"),
                Unwind("owner"),
                Project(
                    {
                        **_VIDEO_SUMMARY,
                        "is_published": "is_published",
                        "updated_at": "updated_at",
                        "owner": {
                            "id": "owner.id",
                            "username": "owner.username",
                            "email": "owner.email",
                            "avatar": "owner.avatar",
                        },
                    }
                ),
            ]
        )
        return self.store.aggregate(Pipeline("videos", tuple(stages)))

    def user_tweets(self, owner_id: str) -> List[Dict[str, Any]]:
        owner_id = require_uuid(owner_id, "user id")
        pipeline = Pipeline(
            "tweets",
            (
                Match({"owner": owner_id}),
                Lookup("accounts", "owner", "id", "owner"),
                Unwind("owner"),
                Project(
                    {
                        "id": "id",
                        "content": "content",
                        "created_at": "created_at",
                        "updated_at": "updated_at",
                        "owner": OWNER_SUMMARY,
                    }
                ),
            ),
        )
        return self.store.aggregate(pipeline)
