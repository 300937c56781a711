"""AI analysis rows, dedup decisions and the comparison window."""

from __future__ import annotations

from datetime import datetime
import sqlite3

from ..core.types import (
    AIAnalysis,
    AnalysisStatus,
    DecisionStatus,
    DedupDecision,
    WindowEntry,
    utc_now,
)
from ..errors import RepositorySaveError
from .database import Database, from_db_time, from_json, to_db_time, to_json


class AnalysisRepository:
    def __init__(self, db: Database):
        self.db = db

    # -- summarization ---------------------------------------------------

    def claim(self, item_id: int, now: datetime | None = None) -> bool:
        """Insert a pending row for ``item_id``.

        Returns False when any row (pending or terminal) already exists, so
        only one worker ever processes a given item.
        """
        try:
            cursor = self.db.execute(
                """INSERT INTO ai_analysis (item_id, status, created_at)
                   VALUES (?, 'pending', ?)
                   ON CONFLICT(item_id) DO NOTHING""",
                (item_id, to_db_time(now or utc_now())),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot claim item {item_id}: {exc}") from exc
        return cursor.rowcount == 1

    def save(self, analysis: AIAnalysis) -> None:
        """Write a terminal result over the pending claim."""
        try:
            self.db.execute(
                """UPDATE ai_analysis SET
                     status = ?, language = ?, importance = ?, category = ?,
                     headline = ?, summary = ?, keywords = ?, entities = ?,
                     core_event = ?, numeric_facts = ?, model_used = ?,
                     attempts = ?, error = ?, processed_at = ?
                   WHERE item_id = ? AND status = 'pending'""",
                (
                    analysis.status.value,
                    analysis.language,
                    analysis.importance,
                    analysis.category,
                    analysis.headline,
                    analysis.summary,
                    to_json(analysis.keywords),
                    to_json(analysis.entities),
                    analysis.core_event,
                    to_json(analysis.numeric_facts),
                    analysis.model_used,
                    analysis.attempts,
                    analysis.error,
                    to_db_time(analysis.processed_at or utc_now()),
                    analysis.item_id,
                ),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot save analysis for item {analysis.item_id}: {exc}") from exc

    def get(self, item_id: int) -> AIAnalysis | None:
        row = self.db.query_one("SELECT * FROM ai_analysis WHERE item_id = ?", (item_id,))
        return _row_to_analysis(row) if row else None

    def release_stale_pending(self, older_than: datetime) -> int:
        """Delete pending claims created before ``older_than``; returns the count."""
        cursor = self.db.execute(
            "DELETE FROM ai_analysis WHERE status = 'pending' AND created_at < ?",
            (to_db_time(older_than),),
        )
        return cursor.rowcount

    def list_undecided(self, limit: int = 100) -> list[AIAnalysis]:
        """Successful analyses that have no dedup decision yet, by item id."""
        rows = self.db.query(
            """SELECT a.* FROM ai_analysis a
               LEFT JOIN dedup_decisions d ON d.item_id = a.item_id
               WHERE a.status = 'success' AND d.item_id IS NULL
               ORDER BY a.item_id
               LIMIT ?""",
            (limit,),
        )
        return [_row_to_analysis(row) for row in rows]

    def counts(self) -> dict[str, int]:
        rows = self.db.query("SELECT status, COUNT(*) AS total FROM ai_analysis GROUP BY status")
        return {row["status"]: row["total"] for row in rows}

    # -- deduplication ---------------------------------------------------

    def save_decision(self, decision: DedupDecision) -> bool:
        """Insert a decision; returns False if the item already has one."""
        try:
            cursor = self.db.execute(
                """INSERT INTO dedup_decisions
                   (item_id, status, similarity, can_be_published, reason,
                    duplicate_of_item_id, dedup_group_key, compared_item_ids,
                    model_used, checked_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(item_id) DO NOTHING""",
                (
                    decision.item_id,
                    decision.status.value,
                    decision.similarity,
                    1 if decision.can_be_published else 0,
                    decision.reason,
                    decision.duplicate_of_item_id,
                    decision.dedup_group_key,
                    to_json(decision.compared_item_ids),
                    decision.model_used,
                    to_db_time(decision.checked_at or utc_now()),
                ),
            )
        except sqlite3.Error as exc:
            raise RepositorySaveError(f"Cannot save decision for item {decision.item_id}: {exc}") from exc
        return cursor.rowcount == 1

    def get_decision(self, item_id: int) -> DedupDecision | None:
        row = self.db.query_one("SELECT * FROM dedup_decisions WHERE item_id = ?", (item_id,))
        if row is None:
            return None
        return DedupDecision(
            item_id=row["item_id"],
            status=DecisionStatus(row["status"]),
            similarity=row["similarity"],
            can_be_published=bool(row["can_be_published"]),
            reason=row["reason"],
            duplicate_of_item_id=row["duplicate_of_item_id"],
            dedup_group_key=row["dedup_group_key"],
            compared_item_ids=[int(x) for x in from_json(row["compared_item_ids"])],
            model_used=row["model_used"],
            checked_at=from_db_time(row["checked_at"]),
        )

    def list_publishable(self, since: datetime, limit: int = 100) -> list[int]:
        """Item ids cleared by dedup whose group has no publication row yet."""
        rows = self.db.query(
            """SELECT d.item_id FROM dedup_decisions d
               JOIN ai_analysis a ON a.item_id = d.item_id AND a.status = 'success'
               WHERE d.status = 'checked' AND d.can_be_published = 1
                 AND d.checked_at >= ?
                 AND NOT EXISTS (
                   SELECT 1 FROM publications p WHERE p.dedup_group_key = d.dedup_group_key
                 )
               ORDER BY d.item_id
               LIMIT ?""",
            (to_db_time(since), limit),
        )
        return [row["item_id"] for row in rows]

    def recent_window(
        self,
        since: datetime,
        limit: int,
        exclude_item_id: int | None = None,
    ) -> list[WindowEntry]:
        """Previously checked items created after ``since``, newest first."""
        rows = self.db.query(
            """SELECT i.id AS item_id, i.content_hash, i.title, i.published_at,
                      a.headline, a.summary, a.entities, a.core_event, a.numeric_facts,
                      d.dedup_group_key
               FROM items i
               JOIN ai_analysis a ON a.item_id = i.id AND a.status = 'success'
               JOIN dedup_decisions d ON d.item_id = i.id AND d.status = 'checked'
               WHERE i.created_at >= ? AND i.id != ?
               ORDER BY i.id DESC
               LIMIT ?""",
            (to_db_time(since), exclude_item_id if exclude_item_id is not None else -1, limit),
        )
        return [
            WindowEntry(
                item_id=row["item_id"],
                content_hash=row["content_hash"],
                dedup_group_key=row["dedup_group_key"],
                headline=row["headline"] or row["title"],
                summary=row["summary"] or "",
                entities=tuple(from_json(row["entities"])),
                core_event=row["core_event"],
                numeric_facts=tuple(from_json(row["numeric_facts"])),
                published_at=from_db_time(row["published_at"]),
            )
            for row in rows
        ]


def _row_to_analysis(row: sqlite3.Row) -> AIAnalysis:
    return AIAnalysis(
        item_id=row["item_id"],
        status=AnalysisStatus(row["status"]),
        language=row["language"],
        importance=row["importance"],
        category=row["category"],
        headline=row["headline"],
        summary=row["summary"],
        keywords=from_json(row["keywords"]),
        entities=from_json(row["entities"]),
        core_event=row["core_event"],
        numeric_facts=from_json(row["numeric_facts"]),
        model_used=row["model_used"],
        attempts=row["attempts"],
        error=row["error"],
        processed_at=from_db_time(row["processed_at"]),
    )
