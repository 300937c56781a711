"""
Publication gate.

A reservation is a row in ``publications`` keyed by dedup group. The UNIQUE
constraint is the only arbiter: whoever inserts first owns the group, and
nobody else can publish it until the row is released.

Row lifecycle::

    reserved -> sending -> published
        |          |
        +----------+--> released (row deleted) when the sink refuses

A ``sending`` row whose confirmation never landed stays in place. The sink
may already have delivered the message, so only an operator may reopen it.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import sqlite3
import threading

from ..core.types import Publication, PublicationStatus, utc_now
from ..errors import RepositorySaveError
from .database import Database, from_db_time, to_db_time


class PublicationRepository:
    def __init__(self, db: Database):
        self.db = db

    def try_reserve(self, key: str, item_id: int, target: str, now: datetime | None = None) -> bool:
        """Reserve ``key`` for ``item_id``. Returns False if the group is taken."""
        try:
            cursor = self.db.execute(
                """INSERT INTO publications (dedup_group_key, item_id, status, target, reserved_at)
                   VALUES (?, ?, 'reserved', ?, ?)
                   ON CONFLICT(dedup_group_key) DO NOTHING""",
                (key, item_id, target, to_db_time(now or utc_now())),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot reserve {key}: {exc}") from exc
        return cursor.rowcount == 1

    def mark_sending(self, key: str) -> bool:
        """Flag a reservation as handed to the sink. Must precede the send."""
        try:
            cursor = self.db.execute(
                "UPDATE publications SET status = 'sending' WHERE dedup_group_key = ? AND status = 'reserved'",
                (key,),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot mark {key} as sending: {exc}") from exc
        return cursor.rowcount == 1

    def record_published(self, key: str, message_id: str | None, now: datetime | None = None) -> None:
        try:
            self.db.execute(
                """UPDATE publications SET status = 'published', message_id = ?, published_at = ?
                   WHERE dedup_group_key = ? AND status IN ('reserved', 'sending')""",
                (message_id, to_db_time(now or utc_now()), key),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot record publication {key}: {exc}") from exc

    def release(self, key: str) -> bool:
        """Drop a reservation that was never published."""
        try:
            cursor = self.db.execute(
                "DELETE FROM publications WHERE dedup_group_key = ? AND status IN ('reserved', 'sending')",
                (key,),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot release {key}: {exc}") from exc
        return cursor.rowcount == 1

    def get(self, key: str) -> Publication | None:
        row = self.db.query_one("SELECT * FROM publications WHERE dedup_group_key = ?", (key,))
        if row is None:
            return None
        return Publication(
            dedup_group_key=row["dedup_group_key"],
            item_id=row["item_id"],
            status=PublicationStatus(row["status"]),
            target=row["target"],
            reserved_at=from_db_time(row["reserved_at"]),
            message_id=row["message_id"],
            published_at=from_db_time(row["published_at"]),
        )

    def purge_expired(self, retention_days: int, now: datetime | None = None) -> int:
        """Delete published rows older than the retention window."""
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        cursor = self.db.execute(
            "DELETE FROM publications WHERE status = 'published' AND published_at < ?",
            (to_db_time(cutoff),),
        )
        return cursor.rowcount

    def release_stale(self, older_than: datetime) -> int:
        """Release reservations that never reached the sink.

        ``sending`` rows are left alone: their delivery is unknown.
        """
        cursor = self.db.execute(
            "DELETE FROM publications WHERE status = 'reserved' AND reserved_at < ?",
            (to_db_time(older_than),),
        )
        return cursor.rowcount

    def counts(self) -> dict[str, int]:
        rows = self.db.query("SELECT status, COUNT(*) AS total FROM publications GROUP BY status")
        return {row["status"]: row["total"] for row in rows}


class DryRunPublications(PublicationRepository):
    """Gate for dry runs: reads existing rows, keeps its own writes in memory.

    Groups already held in the store are still reported as duplicates, and
    two items of one group in the same run still collapse to one message,
    but nothing is ever written to ``publications``.
    """

    def __init__(self, db: Database):
        super().__init__(db)
        self._lock = threading.Lock()
        self._held: set[str] = set()

    def try_reserve(self, key: str, item_id: int, target: str, now: datetime | None = None) -> bool:
        with self._lock:
            if key in self._held or super().get(key) is not None:
                return False
            self._held.add(key)
            return True

    def mark_sending(self, key: str) -> bool:
        return key in self._held

    def record_published(self, key: str, message_id: str | None, now: datetime | None = None) -> None:
        pass

    def release(self, key: str) -> bool:
        with self._lock:
            if key not in self._held:
                return False
            self._held.discard(key)
            return True

    def purge_expired(self, retention_days: int, now: datetime | None = None) -> int:
        return 0

    def release_stale(self, older_than: datetime) -> int:
        return 0
