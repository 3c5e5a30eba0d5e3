"""Durable per-user session storage."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS narrative_sessions (
    user_id INTEGER PRIMARY KEY,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SessionStore(Protocol):
    """Key-value store of JSON-serialisable session mappings keyed by user id."""

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        ...

    def set(self, user_id: int, value: Optional[Dict[str, Any]]) -> None:
        ...


class SqliteSessionStore:
    """Stores each session as one JSON document per user."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT data FROM narrative_sessions WHERE user_id = ?",
                (int(user_id),),
            ).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def set(self, user_id: int, value: Optional[Dict[str, Any]]) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            if value is None:
                conn.execute(
                    "DELETE FROM narrative_sessions WHERE user_id = ?", (int(user_id),)
                )
            else:
                conn.execute(
                    "REPLACE INTO narrative_sessions (user_id, data, updated_at) VALUES (?, ?, ?)",
                    (
                        int(user_id),
                        json.dumps(value, sort_keys=True),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
            conn.commit()
        logger.debug("Stored session for user %s (%s)", user_id, "cleared" if value is None else "updated")


class MemorySessionStore:
    """In-process store used in fast mode and tests.

    Values go through a JSON round trip so callers observe the same
    serialisation constraints as with the SQLite store.
    """

    def __init__(self) -> None:
        self._data: Dict[int, str] = {}
        self._lock = threading.Lock()

    def get(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._data.get(int(user_id))
        return json.loads(raw) if raw is not None else None

    def set(self, user_id: int, value: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            if value is None:
                self._data.pop(int(user_id), None)
            else:
                self._data[int(user_id)] = json.dumps(value, sort_keys=True)

    def __len__(self) -> int:
        return len(self._data)


__all__ = ["MemorySessionStore", "SessionStore", "SqliteSessionStore"]
