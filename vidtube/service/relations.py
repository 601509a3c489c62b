from __future__ import annotations

from typing import Any, Optional, Protocol

from vidtube.logging import get_logger
from vidtube.service.errors import InvalidArgumentError, NotFoundError
from vidtube.service.validation import require_uuid

logger = get_logger(__name__)


class RelationStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Any]: ...

    def get_video(self, video_id: str) -> Optional[Any]: ...

    def get_comment(self, comment_id: str) -> Optional[Any]: ...

    def get_tweet(self, tweet_id: str) -> Optional[Any]: ...

    def toggle_subscription(self, subscriber: str, channel: str) -> bool: ...

    def toggle_like(self, liked_by: str, kind: str, target: str) -> bool: ...

    def increment_views(self, video_id: str) -> Optional[int]: ...

    def push_watch_history(self, account_id: str, video_id: str) -> bool: ...


class RelationService:
    """Toggle-style relationships between accounts and content.

    Each toggle deletes the pair record when present and creates it
    otherwise, returning whether the relationship exists afterwards.
    """

    def __init__(self, store: RelationStore) -> None:
        self.store = store

    def toggle_subscription(self, subscriber_id: str, channel_id: str) -> bool:
        channel_id = require_uuid(channel_id, "channel id")
        if subscriber_id == channel_id:
            raise InvalidArgumentError("cannot subscribe to your own channel")
        if not self.store.get_account(channel_id):
            raise NotFoundError("channel does not exist")
        subscribed = self.store.toggle_subscription(subscriber_id, channel_id)
        logger.info(
            "subscription_toggled",
            subscriber_id=subscriber_id,
            channel_id=channel_id,
            subscribed=subscribed,
        )
        return subscribed

    def toggle_video_like(self, viewer_id: str, video_id: str) -> bool:
        video_id = require_uuid(video_id, "video id")
        if not self.store.get_video(video_id):
            raise NotFoundError("video not found")
        return self._toggle_like(viewer_id, "video", video_id)

    def toggle_comment_like(self, viewer_id: str, comment_id: str) -> bool:
        comment_id = require_uuid(comment_id, "comment id")
        if not self.store.get_comment(comment_id):
            raise NotFoundError("comment not found")
        return self._toggle_like(viewer_id, "comment", comment_id)

    def toggle_tweet_like(self, viewer_id: str, tweet_id: str) -> bool:
        tweet_id = require_uuid(tweet_id, "tweet id")
        if not self.store.get_tweet(tweet_id):
            raise NotFoundError("tweet not found")
        return self._toggle_like(viewer_id, "tweet", tweet_id)

    def _toggle_like(self, viewer_id: str, kind: str, target: str) -> bool:
        liked = self.store.toggle_like(viewer_id, kind, target)
        logger.info("like_toggled", viewer_id=viewer_id, kind=kind, target=target, liked=liked)
        return liked

    def record_view(self, viewer_id: str, video_id: str) -> int:
        """Count a view and prepend the video to the viewer's history."""
        video_id = require_uuid(video_id, "video id")
        views = self.store.increment_views(video_id)
        if views is None:
            raise NotFoundError("video not found")
        if not self.store.push_watch_history(viewer_id, video_id):
            raise NotFoundError("user does not exist")
        return views
