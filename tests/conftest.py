"""Shared fakes and fixtures for the narrative tests."""
from __future__ import annotations

import itertools
import random
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from narrative_bot.config import Settings
from narrative_bot.dispatcher import ReplyDispatcher
from narrative_bot.models import Archetype, Post, User
from narrative_bot.narratives import AdvancedUserNarrative, NewUserNarrative
from narrative_bot.scheduler import ManualJobQueue, TimeoutScheduler
from narrative_bot.store import MemorySessionStore
from narrative_bot.strings import StringLibrary
from narrative_bot.telemetry import TelemetryCollector

BOT = User(id=-2, username="discobot")
HUB_TOPIC = 1
CATEGORY = 5
MENTION = '<a class="mention" href="/u/discobot">@discobot</a>'


class FakePostService:
    """In-memory forum recording every mutation the bot performs."""

    def __init__(self) -> None:
        self.posts: Dict[int, Post] = {}
        self.created: List[Post] = []
        self.create_calls: List[dict] = []
        self.revised: List[Tuple[int, int, str]] = []
        self.destroyed: List[Tuple[int, int]] = []
        self.likes: List[Tuple[int, int]] = []
        self._ids = itertools.count(5000)
        self._topics = itertools.count(900)
        self._post_numbers: Dict[int, int] = {}

    def add(self, post: Post) -> Post:
        self.posts[post.id] = post
        return post

    def create_post(
        self,
        author_id: int,
        raw: str,
        *,
        topic_id: Optional[int] = None,
        reply_to_post_number: Optional[int] = None,
        title: Optional[str] = None,
        archetype: Archetype = Archetype.REGULAR,
        target_usernames: Sequence[str] = (),
        skip_bot: bool = False,
    ) -> Post:
        if topic_id is None:
            topic_id = next(self._topics)
        number = self._post_numbers.get(topic_id, 1) + 1
        self._post_numbers[topic_id] = number
        post = Post(
            id=next(self._ids),
            topic_id=topic_id,
            user_id=author_id,
            raw=raw,
            post_number=number,
            archetype=archetype,
        )
        self.create_calls.append(
            {
                "author_id": author_id,
                "topic_id": topic_id,
                "reply_to_post_number": reply_to_post_number,
                "title": title,
                "archetype": archetype,
                "target_usernames": tuple(target_usernames),
                "skip_bot": skip_bot,
            }
        )
        self.created.append(post)
        self.posts[post.id] = post
        return post

    def revise_post(self, actor_id: int, post: Post, raw: str, *, skip_bot: bool = False) -> Post:
        revised = replace(post, raw=raw)
        self.posts[post.id] = revised
        self.revised.append((actor_id, post.id, raw))
        return revised

    def destroy_post(self, actor_id: int, post: Post, *, skip_bot: bool = False) -> None:
        self.destroyed.append((actor_id, post.id))

    def like_post(self, actor_id: int, post: Post) -> None:
        self.likes.append((actor_id, post.id))

    def find_post(self, post_id: int) -> Optional[Post]:
        return self.posts.get(post_id)

    def bot_posts(self) -> List[Post]:
        return [post for post in self.created if post.user_id == BOT.id]

    def bot_raws(self) -> List[str]:
        return [post.raw for post in self.bot_posts()]


def _settings_data() -> dict:
    return {
        "bot": {"user_id": BOT.id, "username": BOT.username},
        "site": {
            "title": "Test Forum",
            "category_id": CATEGORY,
            "category_slug": "bot-tutorial",
            "welcome_topic_id": HUB_TOPIC,
        },
        "timing": {"timeout_seconds": 900, "reset_init_delay_seconds": 2},
        "fast_mode": True,
        "locale": "en",
    }


@pytest.fixture
def settings(tmp_path) -> Settings:
    return replace(
        Settings.from_dict(_settings_data()),
        session_db_path=tmp_path / "sessions.db",
        telemetry_db_path=tmp_path / "telemetry.db",
    )


@pytest.fixture
def clock():
    return lambda: datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def posts() -> FakePostService:
    return FakePostService()


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture(scope="session")
def strings() -> StringLibrary:
    return StringLibrary("en")


@pytest.fixture
def telemetry(tmp_path) -> TelemetryCollector:
    return TelemetryCollector(tmp_path / "telemetry.db")


@pytest.fixture
def queue(clock) -> ManualJobQueue:
    return ManualJobQueue(clock=clock)


@pytest.fixture
def scheduler(queue) -> TimeoutScheduler:
    return TimeoutScheduler(queue, timeout_seconds=900, init_delay_seconds=2)


@pytest.fixture
def dispatcher(posts) -> ReplyDispatcher:
    return ReplyDispatcher(posts, BOT, fast_mode=True)


@pytest.fixture
def collaborators(settings, store, strings, dispatcher, scheduler, telemetry) -> dict:
    return {
        "store": store,
        "strings": strings,
        "dispatcher": dispatcher,
        "scheduler": scheduler,
        "telemetry": telemetry,
        "rng": random.Random(7),
    }


@pytest.fixture
def new_user(settings, collaborators) -> NewUserNarrative:
    return NewUserNarrative(settings, **collaborators)


@pytest.fixture
def advanced_user(settings, collaborators) -> AdvancedUserNarrative:
    return AdvancedUserNarrative(settings, **collaborators)


@pytest.fixture
def user() -> User:
    return User(id=42, username="alice")


@pytest.fixture
def make_post(posts, user):
    """Create a user-authored post registered with the fake forum."""

    ids = itertools.count(100)

    def _make(topic_id: int, raw: str = "", cooked: str = "", **fields) -> Post:
        fields.setdefault("user_id", user.id)
        post = Post(id=next(ids), topic_id=topic_id, raw=raw, cooked=cooked or f"<p>{raw}</p>", **fields)
        return posts.add(post)

    return _make
