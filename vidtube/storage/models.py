from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _dump_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return list(value)
    return value


def _load_value(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


class _Document:
    """Round-trip helpers between dataclasses and stored JSON documents."""

    def to_doc(self) -> Dict[str, Any]:
        return {key: _dump_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in doc.items():
            if key not in known:
                continue
            if key.endswith("_at"):
                value = _load_value(value)
            kwargs[key] = value
        return cls(**kwargs)


@dataclass
class Account(_Document):
    id: str
    username: str
    email: str
    full_name: str
    password_hash: str
    avatar: Optional[str] = None
    cover_image: Optional[str] = None
    refresh_token: Optional[str] = None
    # most recent first, duplicates allowed
    watch_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def public_profile(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "avatar": self.avatar,
            "cover_image": self.cover_image,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Subscription(_Document):
    id: str
    subscriber: str
    channel: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Video(_Document):
    id: str
    owner: str
    title: str
    video_file: str
    thumbnail: str
    description: str = ""
    duration: float = 0.0
    views: int = 0
    is_published: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


LIKE_TARGETS = ("video", "comment", "tweet")


@dataclass
class Like(_Document):
    id: str
    liked_by: str
    video: Optional[str] = None
    comment: Optional[str] = None
    tweet: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        targets = [name for name in LIKE_TARGETS if getattr(self, name)]
        if len(targets) != 1:
            raise ValueError("a like references exactly one of video, comment or tweet")

    @property
    def target(self) -> tuple[str, str]:
        for name in LIKE_TARGETS:
            value = getattr(self, name)
            if value:
                return name, value
        raise ValueError("like has no target")


@dataclass
class Comment(_Document):
    id: str
    content: str
    video: str
    owner: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Tweet(_Document):
    id: str
    content: str
    owner: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


# collection name -> document class
COLLECTIONS = {
    "accounts": Account,
    "subscriptions": Subscription,
    "videos": Video,
    "likes": Like,
    "comments": Comment,
    "tweets": Tweet,
}
