"""Core data models for the onboarding narratives."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class InputKind(str, Enum):
    """Classified kind of an inbound event."""

    INIT = "init"
    REPLY = "reply"
    EDIT = "edit"
    DELETE = "delete"
    RECOVER = "recover"
    SKIP = "skip"


class Archetype(str, Enum):
    REGULAR = "regular"
    PRIVATE_MESSAGE = "private_message"


@dataclass(frozen=True)
class User:
    id: int
    username: str


@dataclass
class Post:
    """Already-rendered post as handed over by the content service.

    ``onebox_count``, ``image_count`` and ``link_count`` are the cached
    results of the upstream content analysis; ``None`` means the analysis
    has not run for this post.
    """

    id: int
    topic_id: int
    user_id: int
    raw: str = ""
    cooked: str = ""
    post_number: int = 1
    archetype: Archetype = Archetype.REGULAR
    category_id: Optional[int] = None
    is_first_post: bool = False
    wiki: bool = False
    reply_to_user_id: Optional[int] = None
    allowed_user_ids: Tuple[int, ...] = ()
    onebox_count: Optional[int] = None
    image_count: Optional[int] = None
    link_count: Optional[int] = None

    @property
    def url(self) -> str:
        return f"/t/{self.topic_id}/{self.post_number}"

    @property
    def is_private_message(self) -> bool:
        return self.archetype == Archetype.PRIVATE_MESSAGE


@dataclass(frozen=True)
class Event:
    """Transient inbound event; never persisted."""

    kind: InputKind
    user: User
    post: Optional[Post] = None


@dataclass
class Session:
    """Durable per-user progress through one track."""

    user_id: int
    track: str
    state: str = "begin"
    topic_id: Optional[int] = None
    last_post_id: Optional[int] = None
    # user post that drove the last transition; replays of it are rejected
    last_user_post_id: Optional[int] = None
    attempted: bool = False
    step_data: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    do_not_understand_count: int = 0
    completed: List[str] = field(default_factory=list)

    @classmethod
    def fresh(
        cls, user_id: int, track: str, completed: Optional[List[str]] = None
    ) -> "Session":
        return cls(user_id=user_id, track=track, completed=list(completed or []))

    @classmethod
    def from_dict(cls, user_id: int, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=user_id,
            track=str(data.get("track") or ""),
            state=str(data.get("state") or "begin"),
            topic_id=data.get("topic_id"),
            last_post_id=data.get("last_post_id"),
            last_user_post_id=data.get("last_user_post_id"),
            attempted=bool(data.get("attempted", False)),
            step_data={
                str(key): dict(value)
                for key, value in (data.get("step_data") or {}).items()
            },
            do_not_understand_count=int(data.get("do_not_understand_count", 0)),
            completed=[str(item) for item in data.get("completed") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "track": self.track,
            "state": self.state,
            "topic_id": self.topic_id,
        }
        if self.last_post_id is not None:
            payload["last_post_id"] = self.last_post_id
        if self.last_user_post_id is not None:
            payload["last_user_post_id"] = self.last_user_post_id
        if self.attempted:
            payload["attempted"] = True
        if self.step_data:
            payload["step_data"] = copy.deepcopy(self.step_data)
        if self.do_not_understand_count:
            payload["do_not_understand_count"] = self.do_not_understand_count
        if self.completed:
            payload["completed"] = list(self.completed)
        return payload

    def copy(self) -> "Session":
        return copy.deepcopy(self)

    def get_step_data(self, key: str, state: Optional[str] = None) -> Any:
        return self.step_data.get(state or self.state, {}).get(key)

    def set_step_data(self, key: str, value: Any, state: Optional[str] = None) -> None:
        self.step_data.setdefault(state or self.state, {})[key] = value

    def has_completed(self, track: str) -> bool:
        return track in self.completed


@dataclass(frozen=True)
class InspectionResult:
    """Structural features of a rendered post."""

    bot_mentioned: bool = False
    has_onebox: bool = False
    image_count: int = 0
    link_count: int = 0
    has_formatting: bool = False
    has_quote: bool = False
    has_emoji: bool = False
    has_poll: bool = False
    has_details: bool = False
    is_wiki: bool = False


__all__ = [
    "Archetype",
    "Event",
    "InputKind",
    "InspectionResult",
    "Post",
    "Session",
    "User",
]
