"""High-level service wiring the narratives to their collaborators."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import Settings, get_settings
from .dispatcher import PostService, ReplyDispatcher
from .engine import NarrativeEngine, UserLocks
from .models import InputKind, Post, Session, User
from .narratives import AdvancedUserNarrative, NewUserNarrative
from .scheduler import BackgroundJobQueue, JobQueue, ManualJobQueue, TimeoutScheduler
from .selector import TrackSelector
from .store import MemorySessionStore, SessionStore, SqliteSessionStore
from .strings import StringLibrary
from .telemetry import TelemetryCollector
from .tracks import ADVANCED_USER_TRACK, NEW_USER_TRACK

logger = logging.getLogger(__name__)


class NarrativeService:
    """Coordinates session storage, the job queue and the track engines."""

    def __init__(
        self,
        posts: PostService,
        settings: Optional[Settings] = None,
        *,
        store: Optional[SessionStore] = None,
        strings: Optional[StringLibrary] = None,
        queue: Optional[JobQueue] = None,
        telemetry: Optional[TelemetryCollector] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        fast_mode = self.settings.fast_mode
        if store is None:
            store = MemorySessionStore() if fast_mode else SqliteSessionStore(self.settings.session_db_path)
        self.store = store
        self.strings = strings or StringLibrary(self.settings.locale)
        self.telemetry = telemetry or TelemetryCollector(self.settings.telemetry_db_path)
        self.dispatcher = ReplyDispatcher(
            posts,
            User(id=self.settings.bot_user_id, username=self.settings.bot_username),
            pacing=(self.settings.pacing_min_seconds, self.settings.pacing_max_seconds),
            fast_mode=fast_mode,
            sleep=sleep,
        )
        if queue is None:
            queue = ManualJobQueue() if fast_mode else BackgroundJobQueue()
        self.queue = queue
        self.scheduler = TimeoutScheduler(
            queue,
            timeout_seconds=self.settings.timeout_seconds,
            init_delay_seconds=self.settings.reset_init_delay_seconds,
        )
        self.scheduler.on_timeout = self._on_timeout
        self.scheduler.on_init = self._on_init

        locks = UserLocks(enabled=not fast_mode)
        collaborators: Dict[str, Any] = {
            "store": self.store,
            "strings": self.strings,
            "dispatcher": self.dispatcher,
            "scheduler": self.scheduler,
            "telemetry": self.telemetry,
            "locks": locks,
        }
        self.engines: Dict[str, NarrativeEngine] = {
            NEW_USER_TRACK.name: NewUserNarrative(self.settings, **collaborators),
            ADVANCED_USER_TRACK.name: AdvancedUserNarrative(self.settings, **collaborators),
        }
        self.selector = TrackSelector(
            self.engines,
            settings=self.settings,
            store=self.store,
            strings=self.strings,
            dispatcher=self.dispatcher,
            locks=locks,
        )

    def start(self) -> None:
        starter = getattr(self.queue, "start", None)
        if callable(starter):
            starter()
        logger.info("Narrative service started (fast_mode=%s)", self.settings.fast_mode)

    def shutdown(self) -> None:
        stopper = getattr(self.queue, "shutdown", None)
        if callable(stopper):
            stopper()
        self.telemetry.flush()
        logger.info("Narrative service stopped")

    def handle(
        self, input_kind: InputKind | str, user: User, post: Optional[Post] = None
    ) -> Optional[Session]:
        """Entry point for classified forum events."""

        return self.selector.select(input_kind, user, post)

    def notify_timeout(self, user: User, track: Optional[str] = None) -> Optional[Post]:
        engine = self.engines.get(track) if track else self.selector.engine_for(user.id)
        if engine is None:
            logger.warning("Timeout for user %s names unknown track '%s'", user.id, track)
            return None
        return engine.notify_timeout(user)

    def can_start(self, user: User, track: str = ADVANCED_USER_TRACK.name) -> bool:
        return self.engines[track].can_start(user)

    def reset(
        self, user: User, post: Optional[Post] = None, track: str = NEW_USER_TRACK.name
    ) -> Optional[Session]:
        return self.engines[track].reset(user, post)

    def session(self, user_id: int) -> Optional[Session]:
        data = self.store.get(user_id)
        return Session.from_dict(user_id, data) if data else None

    def _on_timeout(self, user: User, track: str) -> None:
        self.notify_timeout(user, track)

    def _on_init(self, user: User, track: str) -> None:
        engine = self.engines.get(track)
        if engine is None:
            logger.warning("Init for user %s names unknown track '%s'", user.id, track)
            return
        engine.initialize(user)


__all__ = ["NarrativeService"]
