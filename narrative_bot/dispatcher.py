"""Bot-authored post mutations with presentation pacing."""
from __future__ import annotations

import hashlib
import logging
import random
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Protocol, Sequence, Tuple

from .models import Archetype, Post, User

logger = logging.getLogger(__name__)

_RANDOM = random.Random()  # nosec B311 - pacing jitter is cosmetic


class PostService(Protocol):
    """Mutation and lookup surface of the forum, provided by the host."""

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
        ...

    def revise_post(self, actor_id: int, post: Post, raw: str, *, skip_bot: bool = False) -> Post:
        ...

    def destroy_post(self, actor_id: int, post: Post, *, skip_bot: bool = False) -> None:
        ...

    def like_post(self, actor_id: int, post: Post) -> None:
        ...

    def find_post(self, post_id: int) -> Optional[Post]:
        ...


class ReplyDispatcher:
    """Creates and mutates posts on behalf of the bot account.

    Replies are memoised by ``(reply target, topic, raw digest)`` so a
    replayed dispatch returns the post created the first time instead of
    posting twice. Every bot mutation is flagged ``skip_bot`` so the host
    does not feed it back to the narratives as a user event.
    """

    _MEMO_SIZE = 512

    def __init__(
        self,
        posts: PostService,
        bot_user: User,
        *,
        pacing: Tuple[float, float] = (2.0, 3.0),
        fast_mode: bool = False,
        sleep: Callable[[float], Any] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._posts = posts
        self._bot_user = bot_user
        self._pacing = pacing
        self._fast_mode = fast_mode
        self._sleep = sleep
        self._rng = rng or _RANDOM
        self._replies: "OrderedDict[Tuple[Optional[int], Optional[int], str], Post]" = OrderedDict()
        self._likes: "OrderedDict[int, bool]" = OrderedDict()

    @property
    def bot_user(self) -> User:
        return self._bot_user

    @property
    def posts(self) -> PostService:
        return self._posts

    def pace(self) -> float:
        """Wait a short randomised moment before replying, unless in fast mode."""

        if self._fast_mode:
            return 0.0
        low, high = self._pacing
        delay = self._rng.uniform(low, high)
        self._sleep(delay)
        return delay

    def reply(
        self,
        raw: str,
        *,
        topic_id: Optional[int],
        reply_to: Optional[Post] = None,
        title: Optional[str] = None,
        archetype: Archetype = Archetype.REGULAR,
        target_usernames: Sequence[str] = (),
        dedupe: bool = True,
    ) -> Post:
        remember = dedupe and reply_to is not None
        key = (
            reply_to.id if reply_to is not None else None,
            topic_id,
            hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        )
        cached = self._replies.get(key) if remember else None
        if cached is not None:
            logger.debug("Suppressing duplicate reply to post %s", reply_to.id)
            return cached

        post = self._posts.create_post(
            self._bot_user.id,
            raw,
            topic_id=topic_id,
            reply_to_post_number=reply_to.post_number if reply_to is not None else None,
            title=title,
            archetype=archetype,
            target_usernames=tuple(target_usernames),
            skip_bot=True,
        )
        if remember:
            self._remember(self._replies, key, post)
        return post

    def like(self, post: Post) -> None:
        if post.id in self._likes:
            return
        self._posts.like_post(self._bot_user.id, post)
        self._remember(self._likes, post.id, True)

    def revise(self, post: Post, raw: str) -> Post:
        return self._posts.revise_post(self._bot_user.id, post, raw, skip_bot=True)

    def destroy(self, post: Post, actor: Optional[User] = None) -> None:
        actor_id = actor.id if actor is not None else self._bot_user.id
        self._posts.destroy_post(actor_id, post, skip_bot=True)

    def create_as(self, user: User, raw: str, *, topic_id: Optional[int]) -> Post:
        """Create a practice post authored by ``user`` without triggering the bot."""

        return self._posts.create_post(user.id, raw, topic_id=topic_id, skip_bot=True)

    def find(self, post_id: Optional[int]) -> Optional[Post]:
        if post_id is None:
            return None
        return self._posts.find_post(int(post_id))

    def _remember(self, memo: "OrderedDict", key: Any, value: Any) -> None:
        memo[key] = value
        memo.move_to_end(key)
        while len(memo) > self._MEMO_SIZE:
            memo.popitem(last=False)


__all__ = ["PostService", "ReplyDispatcher"]
