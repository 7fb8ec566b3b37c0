from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS video_refs (
    video_id TEXT PRIMARY KEY,
    title TEXT NULL,
    duration_seconds INTEGER NULL,
    created_at TEXT NOT NULL,
    refreshed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transcript_cache (
    video_id TEXT PRIMARY KEY,
    transcript TEXT NOT NULL,
    source_strategy TEXT NOT NULL,
    model_or_method TEXT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_ledger (
    caller_id TEXT PRIMARY KEY,
    minutes_used INTEGER NOT NULL DEFAULT 0,
    minutes_granted INTEGER NOT NULL,
    acquisitions INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);
"""

# Seconds a writer waits on a locked database before failing.
_BUSY_TIMEOUT_SECONDS = 30.0


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
