"""SQLite database shared by all repositories."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
import threading
from typing import Any, Iterator, Sequence

from ..errors import StoreUnavailableError


def to_db_time(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO text, so SQL string
    comparison orders timestamps correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def to_json(values: Any) -> str:
    return json.dumps(list(values or []), ensure_ascii=False)


def from_json(value: str | None) -> list[Any]:
    if not value:
        return []
    data = json.loads(value)
    return data if isinstance(data, list) else []


class Database:
    """SQLite wrapper holding one connection behind a re-entrant lock.

    Every ``execute`` is committed before the lock is released, so each
    repository call is an atomic unit even with several worker threads.
    """

    SCHEMA = """
    -- Per-feed polling state (conditional GET validators and backoff)
    CREATE TABLE IF NOT EXISTS feed_state (
        feed_id INTEGER PRIMARY KEY,
        etag TEXT,
        last_modified TEXT,
        last_status INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        backoff_until TEXT,
        fetched_at TEXT,
        updated_at TEXT NOT NULL
    );

    -- Raw entries, unique by content hash (exact-match dedup tier)
    CREATE TABLE IF NOT EXISTS items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feed_id INTEGER NOT NULL,
        content_hash TEXT NOT NULL UNIQUE,
        guid TEXT,
        title TEXT NOT NULL DEFAULT '',
        link TEXT NOT NULL DEFAULT '',
        summary TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL DEFAULT '',
        authors TEXT NOT NULL DEFAULT '[]',
        categories TEXT NOT NULL DEFAULT '[]',
        enclosure_url TEXT,
        enclosure_mime TEXT,
        enclosure_length INTEGER,
        published_at TEXT,
        created_at TEXT NOT NULL
    );

    -- One AI analysis per item; the pending row is the processing claim
    CREATE TABLE IF NOT EXISTS ai_analysis (
        item_id INTEGER PRIMARY KEY REFERENCES items(id),
        status TEXT NOT NULL CHECK (status IN ('pending', 'success', 'failed')),
        language TEXT,
        importance INTEGER,
        category TEXT,
        headline TEXT,
        summary TEXT,
        keywords TEXT NOT NULL DEFAULT '[]',
        entities TEXT NOT NULL DEFAULT '[]',
        core_event TEXT,
        numeric_facts TEXT NOT NULL DEFAULT '[]',
        model_used TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        created_at TEXT NOT NULL,
        processed_at TEXT
    );

    -- One semantic dedup decision per item
    CREATE TABLE IF NOT EXISTS dedup_decisions (
        item_id INTEGER PRIMARY KEY REFERENCES items(id),
        status TEXT NOT NULL CHECK (status IN ('checked', 'failed')),
        similarity REAL NOT NULL DEFAULT 0,
        can_be_published INTEGER NOT NULL DEFAULT 0,
        reason TEXT NOT NULL DEFAULT '',
        duplicate_of_item_id INTEGER,
        dedup_group_key TEXT NOT NULL,
        compared_item_ids TEXT NOT NULL DEFAULT '[]',
        model_used TEXT,
        checked_at TEXT NOT NULL
    );

    -- Publication gate: at most one row per dedup group
    CREATE TABLE IF NOT EXISTS publications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dedup_group_key TEXT NOT NULL UNIQUE,
        item_id INTEGER NOT NULL REFERENCES items(id),
        status TEXT NOT NULL CHECK (status IN ('reserved', 'sending', 'published')),
        target TEXT NOT NULL,
        message_id TEXT,
        reserved_at TEXT NOT NULL,
        published_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_items_feed ON items(feed_id);
    CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);
    CREATE INDEX IF NOT EXISTS idx_analysis_status ON ai_analysis(status);
    CREATE INDEX IF NOT EXISTS idx_dedup_checked ON dedup_decisions(checked_at);
    CREATE INDEX IF NOT EXISTS idx_publications_status ON publications(status);
    """

    def __init__(self, db_path: Path | str):
        """Open the database, creating tables if needed.

        Raises:
            StoreUnavailableError: if the file cannot be opened or initialized
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._init_schema()
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"Cannot open database {self.db_path}: {exc}") from exc

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement and commit it."""
        with self._lock:
            try:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
            return cursor

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock across several statements, committing once at the end."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
