"""Delayed timeout reminders and track re-initialisation."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .models import User

logger = logging.getLogger(__name__)

TIMEOUT_JOB = "narrative_timeout"
INIT_JOB = "narrative_init"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue(Protocol):
    """Keyed delayed-callback queue; enqueueing an existing key replaces it."""

    def enqueue(
        self, key: str, delay_seconds: float, func: Callable[..., Any], payload: Dict[str, Any]
    ) -> datetime:
        ...

    def cancel(self, key: str) -> bool:
        ...


class BackgroundJobQueue:
    """Runs delayed jobs on an APScheduler background thread."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._scheduler = BackgroundScheduler()
        self._clock = clock
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def enqueue(
        self, key: str, delay_seconds: float, func: Callable[..., Any], payload: Dict[str, Any]
    ) -> datetime:
        run_at = self._clock() + timedelta(seconds=delay_seconds)
        self._scheduler.add_job(
            func,
            "date",
            run_date=run_at,
            id=key,
            replace_existing=True,
            kwargs=dict(payload),
        )
        return run_at

    def cancel(self, key: str) -> bool:
        try:
            self._scheduler.remove_job(key)
        except JobLookupError:
            return False
        return True


@dataclass
class ScheduledJob:
    key: str
    run_at: datetime
    func: Callable[..., Any]
    payload: Dict[str, Any] = field(default_factory=dict)


class ManualJobQueue:
    """Job queue driven explicitly by the caller; no background thread."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()

    def enqueue(
        self, key: str, delay_seconds: float, func: Callable[..., Any], payload: Dict[str, Any]
    ) -> datetime:
        run_at = self._clock() + timedelta(seconds=delay_seconds)
        with self._lock:
            self._jobs[key] = ScheduledJob(key, run_at, func, dict(payload))
        return run_at

    def cancel(self, key: str) -> bool:
        with self._lock:
            return self._jobs.pop(key, None) is not None

    def get(self, key: str) -> Optional[ScheduledJob]:
        return self._jobs.get(key)

    def pending(self) -> List[ScheduledJob]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.run_at)

    def fire(self, key: str) -> bool:
        """Run one job now regardless of its due time."""

        with self._lock:
            job = self._jobs.pop(key, None)
        if job is None:
            return False
        job.func(**job.payload)
        return True

    def run_due(self, now: Optional[datetime] = None) -> int:
        moment = now or self._clock()
        with self._lock:
            due = [job for job in self._jobs.values() if job.run_at <= moment]
            for job in due:
                del self._jobs[job.key]
        for job in sorted(due, key=lambda item: item.run_at):
            job.func(**job.payload)
        return len(due)


class TimeoutScheduler:
    """Per-user ``no_timer`` / ``armed(expires_at)`` machine over a job queue.

    At most one timeout is outstanding per user: arming replaces the
    previous job. Cancellation is best-effort, so the timeout handler bound
    to ``on_timeout`` has to cope with a session that moved on meanwhile.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        timeout_seconds: float = 900,
        init_delay_seconds: float = 2,
    ) -> None:
        self._queue = queue
        self._timeout_seconds = timeout_seconds
        self._init_delay_seconds = init_delay_seconds
        # user id -> (arm token, expiry); the token tells a replaced job from the current one
        self._armed: Dict[int, Tuple[int, datetime]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self.on_timeout: Optional[Callable[[User, str], Any]] = None
        self.on_init: Optional[Callable[[User, str], Any]] = None

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @staticmethod
    def timeout_key(user_id: int) -> str:
        return f"{TIMEOUT_JOB}:{user_id}"

    @staticmethod
    def init_key(user_id: int) -> str:
        return f"{INIT_JOB}:{user_id}"

    def arm(self, user: User, track: str) -> datetime:
        with self._lock:
            token = next(self._tokens)
        expires_at = self._queue.enqueue(
            self.timeout_key(user.id),
            self._timeout_seconds,
            self._fire_timeout,
            {"user_id": user.id, "username": user.username, "track": track, "token": token},
        )
        with self._lock:
            self._armed[user.id] = (token, expires_at)
        logger.debug("Armed %s timeout for user %s until %s", track, user.id, expires_at)
        return expires_at

    def cancel(self, user_id: int) -> bool:
        with self._lock:
            self._armed.pop(user_id, None)
        return self._queue.cancel(self.timeout_key(user_id))

    def expires_at(self, user_id: int) -> Optional[datetime]:
        with self._lock:
            entry = self._armed.get(user_id)
        return entry[1] if entry is not None else None

    def is_armed(self, user_id: int) -> bool:
        return self.expires_at(user_id) is not None

    def schedule_init(self, user: User, track: str) -> datetime:
        """Initialise ``track`` for ``user`` shortly after the current event."""

        return self._queue.enqueue(
            self.init_key(user.id),
            self._init_delay_seconds,
            self._fire_init,
            {"user_id": user.id, "username": user.username, "track": track},
        )

    def _fire_timeout(
        self, user_id: int, username: str, track: str, token: Optional[int] = None
    ) -> None:
        with self._lock:
            entry = self._armed.get(user_id)
            if entry is not None and entry[0] == token:
                del self._armed[user_id]
        if self.on_timeout is None:
            logger.warning("Timeout for user %s fired with no handler bound", user_id)
            return
        self.on_timeout(User(id=user_id, username=username), track)

    def _fire_init(self, user_id: int, username: str, track: str) -> None:
        if self.on_init is None:
            logger.warning("Init for user %s fired with no handler bound", user_id)
            return
        self.on_init(User(id=user_id, username=username), track)


__all__ = [
    "BackgroundJobQueue",
    "JobQueue",
    "ManualJobQueue",
    "ScheduledJob",
    "TimeoutScheduler",
]
