"""Raw item storage: the exact-match deduplication tier."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import sqlite3
from typing import Any

from ..core.types import Enclosure, RawItem, StoredItem, utc_now
from ..errors import RepositorySaveError
from .database import Database, from_db_time, from_json, to_db_time, to_json


@dataclass(frozen=True)
class StoreResult:
    """Outcome of ``ItemRepository.store``.

    ``was_new`` is False when the content hash was already present; ``id``
    is then the id of the existing row.
    """

    id: int
    was_new: bool


class ItemRepository:
    def __init__(self, db: Database):
        self.db = db

    def store(self, feed_id: int, item: RawItem, now: datetime | None = None) -> StoreResult:
        """Insert an item unless its content hash already exists.

        Raises:
            RepositorySaveError: on any SQLite failure
        """
        enclosure = item.enclosure
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    """INSERT INTO items
                       (feed_id, content_hash, guid, title, link, summary, content,
                        authors, categories, enclosure_url, enclosure_mime,
                        enclosure_length, published_at, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(content_hash) DO NOTHING""",
                    (
                        feed_id,
                        item.content_hash,
                        item.guid,
                        item.title,
                        item.link,
                        item.summary,
                        item.content,
                        to_json(item.authors),
                        to_json(sorted(item.categories)),
                        enclosure.url if enclosure else None,
                        enclosure.mime if enclosure else None,
                        enclosure.length if enclosure else None,
                        to_db_time(item.published_at),
                        to_db_time(now or utc_now()),
                    ),
                )
                if cursor.rowcount == 1:
                    return StoreResult(id=int(cursor.lastrowid), was_new=True)
                row = conn.execute(
                    "SELECT id FROM items WHERE content_hash = ?", (item.content_hash,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot store item {item.content_hash[:12]}: {exc}") from exc
        if row is None:
            raise RepositorySaveError(f"Item {item.content_hash[:12]} vanished after conflict")
        return StoreResult(id=int(row["id"]), was_new=False)

    def get(self, item_id: int) -> StoredItem | None:
        row = self.db.query_one("SELECT * FROM items WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    def get_by_hash(self, content_hash: str) -> StoredItem | None:
        row = self.db.query_one("SELECT * FROM items WHERE content_hash = ?", (content_hash,))
        return _row_to_item(row) if row else None

    def list_unanalyzed(self, limit: int = 100) -> list[StoredItem]:
        """Items with no analysis row yet, oldest first."""
        rows = self.db.query(
            """SELECT i.* FROM items i
               LEFT JOIN ai_analysis a ON a.item_id = i.id
               WHERE a.item_id IS NULL
               ORDER BY i.id
               LIMIT ?""",
            (limit,),
        )
        return [_row_to_item(row) for row in rows]

    def stats(self) -> dict[str, Any]:
        row = self.db.query_one(
            "SELECT COUNT(*) AS total, COUNT(DISTINCT feed_id) AS feeds FROM items"
        )
        per_feed = self.db.query(
            "SELECT feed_id, COUNT(*) AS total FROM items GROUP BY feed_id ORDER BY feed_id"
        )
        return {
            "total": row["total"] if row else 0,
            "feeds": row["feeds"] if row else 0,
            "per_feed": {r["feed_id"]: r["total"] for r in per_feed},
        }


def _row_to_item(row: sqlite3.Row) -> StoredItem:
    enclosure = None
    if row["enclosure_url"]:
        enclosure = Enclosure(
            url=row["enclosure_url"],
            mime=row["enclosure_mime"] or "application/octet-stream",
            length=row["enclosure_length"] or 0,
        )
    item = RawItem(
        title=row["title"],
        link=row["link"],
        guid=row["guid"],
        summary=row["summary"],
        content=row["content"],
        authors=tuple(from_json(row["authors"])),
        categories=frozenset(from_json(row["categories"])),
        enclosure=enclosure,
        published_at=from_db_time(row["published_at"]),
        content_hash=row["content_hash"],
    )
    return StoredItem(
        id=row["id"],
        feed_id=row["feed_id"],
        item=item,
        created_at=from_db_time(row["created_at"]),
    )
