from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from vidtube.logging import get_logger
from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import (
    LIKE_TARGETS,
    Account,
    Comment,
    Like,
    Subscription,
    Tweet,
    Video,
    new_id,
)
from vidtube.storage.pipeline import Pipeline, evaluate


class MemoryStore:
    """In-memory document store used for tests and local development.

    Documents are kept per collection in insertion order, in the same JSON
    shape the Postgres store persists, so pipelines behave identically.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {
            "accounts": {},
            "subscriptions": {},
            "videos": {},
            "likes": {},
            "comments": {},
            "tweets": {},
        }
        # RLock so helpers can nest acquisitions within one operation
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        avatar: Optional[str] = None,
        cover_image: Optional[str] = None,
    ) -> Account:
        username = username.strip().lower()
        email = email.strip().lower()
        with self._data_lock:
            for doc in self.collections["accounts"].values():
                if doc["username"] == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if doc["email"] == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(),
                username=username,
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                avatar=avatar,
                cover_image=cover_image,
            )
            self.collections["accounts"][account.id] = account.to_doc()
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            doc = self.collections["accounts"].get(account_id)
            return Account.from_doc(doc) if doc else None

    def get_account_by_login(self, login: str) -> Optional[Account]:
        """Resolve an account by username or email, case-insensitively."""
        needle = login.strip().lower()
        with self._data_lock:
            for doc in self.collections["accounts"].values():
                if doc["username"] == needle or doc["email"] == needle:
                    return Account.from_doc(doc)
        return None

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> bool:
        with self._data_lock:
            doc = self.collections["accounts"].get(account_id)
            if not doc:
                return False
            doc["refresh_token"] = token
            doc["updated_at"] = datetime.now(timezone.utc).isoformat()
            return True

    def swap_refresh_token(
        self, account_id: str, expected: str, new_token: Optional[str]
    ) -> bool:
        """Replace the stored refresh token only if it still equals ``expected``."""
        with self._data_lock:
            doc = self.collections["accounts"].get(account_id)
            if not doc or doc.get("refresh_token") != expected:
                return False
            doc["refresh_token"] = new_token
            doc["updated_at"] = datetime.now(timezone.utc).isoformat()
            return True

    def push_watch_history(self, account_id: str, video_id: str) -> bool:
        with self._data_lock:
            doc = self.collections["accounts"].get(account_id)
            if not doc:
                return False
            doc["watch_history"] = [video_id] + list(doc.get("watch_history") or [])
            return True

    # videos, comments, tweets
    def create_video(
        self,
        owner: str,
        title: str,
        video_file: str,
        thumbnail: str,
        *,
        description: str = "",
        duration: float = 0.0,
        views: int = 0,
        is_published: bool = True,
    ) -> Video:
        video = Video(
            id=new_id(),
            owner=owner,
            title=title,
            video_file=video_file,
            thumbnail=thumbnail,
            description=description,
            duration=duration,
            views=views,
            is_published=is_published,
        )
        with self._data_lock:
            self.collections["videos"][video.id] = video.to_doc()
        return video

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._data_lock:
            doc = self.collections["videos"].get(video_id)
            return Video.from_doc(doc) if doc else None

    def increment_views(self, video_id: str) -> Optional[int]:
        with self._data_lock:
            doc = self.collections["videos"].get(video_id)
            if not doc:
                return None
            doc["views"] = int(doc.get("views") or 0) + 1
            return doc["views"]

    def create_comment(self, video: str, owner: str, content: str) -> Comment:
        comment = Comment(id=new_id(), content=content, video=video, owner=owner)
        with self._data_lock:
            self.collections["comments"][comment.id] = comment.to_doc()
        return comment

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._data_lock:
            doc = self.collections["comments"].get(comment_id)
            return Comment.from_doc(doc) if doc else None

    def create_tweet(self, owner: str, content: str) -> Tweet:
        tweet = Tweet(id=new_id(), content=content, owner=owner)
        with self._data_lock:
            self.collections["tweets"][tweet.id] = tweet.to_doc()
        return tweet

    def get_tweet(self, tweet_id: str) -> Optional[Tweet]:
        with self._data_lock:
            doc = self.collections["tweets"].get(tweet_id)
            return Tweet.from_doc(doc) if doc else None

    # toggle relationships
    def toggle_subscription(self, subscriber: str, channel: str) -> bool:
        """Delete the (subscriber, channel) record if present, else create it.

        Returns True when the subscription exists afterwards.
        """
        with self._data_lock:
            subs = self.collections["subscriptions"]
            for sub_id, doc in subs.items():
                if doc["subscriber"] == subscriber and doc["channel"] == channel:
                    del subs[sub_id]
                    return False
            sub = Subscription(id=new_id(), subscriber=subscriber, channel=channel)
            subs[sub.id] = sub.to_doc()
            return True

    def toggle_like(self, liked_by: str, kind: str, target: str) -> bool:
        if kind not in LIKE_TARGETS:
            raise ValueError(f"unknown like target {kind!r}")
        with self._data_lock:
            likes = self.collections["likes"]
            for like_id, doc in likes.items():
                if doc["liked_by"] == liked_by and doc.get(kind) == target:
                    del likes[like_id]
                    return False
            like = Like(id=new_id(), liked_by=liked_by, **{kind: target})
            likes[like.id] = like.to_doc()
            return True

    # derived views
    def aggregate(self, pipeline: Pipeline) -> List[Dict[str, Any]]:
        with self._data_lock:
            snapshot = {
                name: list(docs.values()) for name, docs in self.collections.items()
            }
            return evaluate(pipeline, snapshot)
