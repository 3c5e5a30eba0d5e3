"""Buffered SQLite telemetry for narrative progress, nudges and failures."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS narrative_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recorded_at REAL NOT NULL,
    metric_type TEXT NOT NULL,
    name TEXT NOT NULL,
    track TEXT,
    user_id INTEGER,
    value REAL NOT NULL,
    details TEXT
);
CREATE INDEX IF NOT EXISTS idx_narrative_events_type
    ON narrative_events(metric_type, recorded_at);
"""


class MetricType(Enum):
    TRANSITION = "transition"
    NUDGE = "nudge"
    RECLASSIFICATION = "reclassification"
    TIMEOUT = "timeout"
    RESET = "reset"
    ERROR_RATE = "error_rate"
    TRACK_COMPLETED = "track_completed"


@dataclass
class MetricEvent:
    """One observation waiting to be written."""

    recorded_at: float
    metric_type: MetricType
    name: str
    value: float = 1.0
    track: Optional[str] = None
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> tuple:
        return (
            self.recorded_at,
            self.metric_type.value,
            self.name,
            self.track,
            self.user_id,
            self.value,
            json.dumps(self.details) if self.details else None,
        )


class TelemetryCollector:
    """Collects narrative events in memory and writes them out in batches.

    Timer callbacks record from scheduler threads, so the buffer is guarded
    by a lock. Write failures are logged and the batch is kept for the next
    flush.
    """

    BATCH_SIZE = 100

    def __init__(self, db_path: Optional[Path] = None, *, flush_interval: float = 60):
        self.db_path = Path(db_path or "narrative_telemetry.db")
        self._flush_interval = flush_interval
        self._buffer: List[MetricEvent] = []
        self._lock = threading.Lock()
        self._last_flush = time.time()
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    # Narrative events ---------------------------------------------------

    def track_transition(self, track: str, from_state: str, to_state: str, user_id: int, input_kind: str):
        self.record(
            MetricType.TRANSITION,
            f"{track}.{to_state}",
            track=track,
            user_id=user_id,
            details={"from": from_state, "input": input_kind},
        )

    def track_completion(self, track: str, user_id: int):
        self.record(MetricType.TRACK_COMPLETED, track, track=track, user_id=user_id)

    def track_nudge(self, track: str, state: str, user_id: int, *, sent: bool):
        """A step saw a reply without its feature; ``sent`` is False once nudged."""
        self.record(
            MetricType.NUDGE, f"{track}.{state}", 1.0 if sent else 0.0, track=track, user_id=user_id
        )

    def track_reclassification(self, track: str, kind: str, user_id: int):
        self.record(MetricType.RECLASSIFICATION, f"{track}.{kind}", track=track, user_id=user_id)

    def track_timeout(self, track: str, user_id: int, *, delivered: bool):
        self.record(
            MetricType.TIMEOUT, track, 1.0 if delivered else 0.0, track=track, user_id=user_id
        )

    def track_reset(self, track: str, user_id: int):
        self.record(MetricType.RESET, track, track=track, user_id=user_id)

    def track_error(
        self,
        error_type: str,
        track: Optional[str] = None,
        user_id: Optional[int] = None,
        error_details: Optional[str] = None,
    ):
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            track=track,
            user_id=user_id,
            details={"error": error_details} if error_details else None,
        )

    # Buffering ----------------------------------------------------------

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float = 1.0,
        *,
        track: Optional[str] = None,
        user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        event = MetricEvent(
            recorded_at=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            track=track,
            user_id=user_id,
            details=details or {},
        )
        with self._lock:
            self._buffer.append(event)
            due = (
                len(self._buffer) >= self.BATCH_SIZE
                or time.time() - self._last_flush > self._flush_interval
            )
        if due:
            self.flush()

    def flush(self) -> int:
        """Write buffered events; returns how many were written."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        try:
            with closing(sqlite3.connect(self.db_path)) as conn:
                conn.executemany(
                    "INSERT INTO narrative_events "
                    "(recorded_at, metric_type, name, track, user_id, value, details) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [event.as_row() for event in batch],
                )
                conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to flush %d narrative events: %s", len(batch), exc)
            with self._lock:
                self._buffer[:0] = batch
            return 0
        with self._lock:
            self._last_flush = time.time()
        logger.debug("Flushed %d narrative events", len(batch))
        return len(batch)

    # Queries ------------------------------------------------------------

    def summary(self, metric_type: MetricType, hours: int = 24) -> Dict[str, float]:
        """Total value per metric name over the last ``hours``."""
        self.flush()
        since = time.time() - hours * 3600
        with closing(sqlite3.connect(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT name, SUM(value) FROM narrative_events "
                "WHERE metric_type = ? AND recorded_at >= ? GROUP BY name",
                (metric_type.value, since),
            ).fetchall()
        return {name: total for name, total in rows}

    def user_history(self, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events for one user, newest first."""
        self.flush()
        with closing(sqlite3.connect(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT recorded_at, metric_type, name, track, value, details "
                "FROM narrative_events WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [
            {
                "recorded_at": recorded_at,
                "metric_type": metric_type,
                "name": name,
                "track": track,
                "value": value,
                "details": json.loads(details) if details else {},
            }
            for recorded_at, metric_type, name, track, value, details in rows
        ]


_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Process-wide collector for callers that were not handed one."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


__all__ = ["MetricEvent", "MetricType", "TelemetryCollector", "get_telemetry"]
