"""Routes classified events to the engine of the user's current track."""
from __future__ import annotations

import logging
import re
from typing import Mapping, Optional

from .config import Settings
from .dispatcher import ReplyDispatcher
from .engine import GuardOutcome, NarrativeEngine, UserLocks
from .inspector import bot_mentioned
from .models import InputKind, Post, Session, User
from .store import SessionStore
from .strings import StringLibrary
from .tracks import NEW_USER_TRACK

logger = logging.getLogger(__name__)

_SKIP_PATTERN = re.compile(r"\bskip\b", re.IGNORECASE)


class TrackSelector:
    """Thin router in front of the engines.

    ``@bot start <track>`` resets that track (subject to ``can_start``),
    ``@bot skip`` becomes the skip input when the current step allows it,
    and everything else goes to the engine named by the session's
    ``track`` field.
    """

    def __init__(
        self,
        engines: Mapping[str, NarrativeEngine],
        *,
        settings: Settings,
        store: SessionStore,
        strings: StringLibrary,
        dispatcher: ReplyDispatcher,
        default_track: str = NEW_USER_TRACK.name,
        locks: Optional[UserLocks] = None,
    ) -> None:
        if default_track not in engines:
            raise ValueError(f"Unknown default track '{default_track}'")
        # shared with the engines: routing and processing run under one hold
        self._locks = locks or engines[default_track].locks
        self._engines = dict(engines)
        self._settings = settings
        self._store = store
        self._strings = strings
        self._dispatcher = dispatcher
        self._default_track = default_track

    @property
    def engines(self) -> Mapping[str, NarrativeEngine]:
        return dict(self._engines)

    def engine_for(self, user_id: int) -> NarrativeEngine:
        data = self._store.get(user_id) or {}
        track = data.get("track") or self._default_track
        if track not in self._engines:
            logger.warning("User %s has unknown track '%s'; using %s", user_id, track, self._default_track)
            track = self._default_track
        return self._engines[track]

    def select(
        self, input_kind: InputKind | str, user: User, post: Optional[Post] = None
    ) -> Optional[Session]:
        kind = InputKind(input_kind)
        if post is not None and post.user_id == self._settings.bot_user_id:
            return None
        with self._locks.synchronize(user.id):
            return self._route(kind, user, post)

    def _route(self, kind: InputKind, user: User, post: Optional[Post]) -> Optional[Session]:
        mentioned = post is not None and bot_mentioned(post, self._settings.bot_username)
        if kind is InputKind.REPLY and mentioned:
            requested = self._requested_track(post.raw or "")
            if requested is not None:
                return self._start(requested, user, post)

        engine = self.engine_for(user.id)
        session = engine.load_session(user.id)
        if kind is InputKind.REPLY and mentioned and _SKIP_PATTERN.search(post.raw or ""):
            if engine.track.skippable(session.state):
                kind = InputKind.SKIP

        if not self._is_relevant(engine, kind, user, post, session, mentioned):
            logger.debug("No %s narrative interest in %s from user %s", engine.name, kind.value, user.id)
            return None
        return engine.process(kind, user, post)

    def _requested_track(self, raw: str) -> Optional[str]:
        lowered = raw.lower()
        for name, engine in self._engines.items():
            if engine.track.reset_trigger.lower() in lowered:
                return name
        return None

    def _start(self, track: str, user: User, post: Post) -> Optional[Session]:
        engine = self._engines[track]
        if not engine.can_start(user):
            logger.info("User %s asked for %s before it is unlocked", user.id, track)
            self._dispatcher.pace()
            self._dispatcher.reply(
                self._strings.translate(
                    "track_selector.cannot_start_advanced",
                    username=user.username,
                    bot_username=self._settings.bot_username,
                ),
                topic_id=post.topic_id,
                reply_to=post,
            )
            return None
        return engine.reset(user, post)

    def _is_relevant(
        self,
        engine: NarrativeEngine,
        kind: InputKind,
        user: User,
        post: Optional[Post],
        session: Session,
        mentioned: bool,
    ) -> bool:
        if post is None:
            return True
        if self._store.get(user.id) is None:
            return mentioned
        if engine.track.is_terminal(session.state):
            guard = engine.evaluate_guards(kind, user, post, session)
            return guard.outcome is not GuardOutcome.PROCEED
        return True


__all__ = ["TrackSelector"]
