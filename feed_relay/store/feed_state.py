"""Persistence of FeedState keyed by feed id."""

from __future__ import annotations

from datetime import datetime
import sqlite3

from ..core.state import FeedState
from ..core.types import utc_now
from ..errors import RepositorySaveError
from .database import Database, from_db_time, to_db_time


class FeedStateRepository:
    def __init__(self, db: Database):
        self.db = db

    def get(self, feed_id: int) -> FeedState | None:
        row = self.db.query_one("SELECT * FROM feed_state WHERE feed_id = ?", (feed_id,))
        if row is None:
            return None
        return FeedState(
            etag=row["etag"],
            last_modified=row["last_modified"],
            last_status=row["last_status"],
            error_count=row["error_count"],
            backoff_until=from_db_time(row["backoff_until"]),
            fetched_at=from_db_time(row["fetched_at"]),
        )

    def save(self, feed_id: int, state: FeedState, now: datetime | None = None) -> None:
        """Upsert the whole state in one statement."""
        try:
            self.db.execute(
                """INSERT INTO feed_state
                   (feed_id, etag, last_modified, last_status, error_count,
                    backoff_until, fetched_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(feed_id) DO UPDATE SET
                     etag = excluded.etag,
                     last_modified = excluded.last_modified,
                     last_status = excluded.last_status,
                     error_count = excluded.error_count,
                     backoff_until = excluded.backoff_until,
                     fetched_at = excluded.fetched_at,
                     updated_at = excluded.updated_at""",
                (
                    feed_id,
                    state.etag,
                    state.last_modified,
                    state.last_status,
                    state.error_count,
                    to_db_time(state.backoff_until),
                    to_db_time(state.fetched_at),
                    to_db_time(now or utc_now()),
                ),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot save state for feed {feed_id}: {exc}") from exc

    def all(self) -> dict[int, FeedState]:
        rows = self.db.query("SELECT feed_id FROM feed_state ORDER BY feed_id")
        states: dict[int, FeedState] = {}
        for row in rows:
            state = self.get(row["feed_id"])
            if state is not None:
                states[row["feed_id"]] = state
        return states
