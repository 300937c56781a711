"""
Publication stage.

Reserve the dedup group, mark it as sending, send the message, then
confirm. A refused send releases the reservation so a later run can retry
the group. A send whose confirmation cannot be stored keeps the group
closed. Store failures are reported per item. Losing the reservation to
another item is the normal duplicate path, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Callable, Sequence

from ..config import PublishConfig
from ..core.types import AIAnalysis, DedupDecision, StoredItem, utc_now
from ..errors import PublishError, RepositorySaveError
from ..logging_utils import log_event
from ..publish.formatter import MessageFormatter
from ..publish.sinks import MessageSink
from ..store.publications import PublicationRepository


class PublishOutcome(str, Enum):
    PUBLISHED = "published"
    FILTERED = "filtered"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED = "failed"


@dataclass
class PublishCandidate:
    stored: StoredItem
    analysis: AIAnalysis
    decision: DedupDecision

    @property
    def item_id(self) -> int:
        return self.stored.id


@dataclass
class PublishResult:
    item_id: int
    outcome: PublishOutcome
    group_key: str
    message_id: str | None = None
    reason: str | None = None


class PublicationService:
    def __init__(
        self,
        publications: PublicationRepository,
        sink: MessageSink,
        cfg: PublishConfig,
        formatter: MessageFormatter | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ):
        self.publications = publications
        self.sink = sink
        self.cfg = cfg
        self.formatter = formatter or MessageFormatter(cfg.template_file)
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._categories = {c.lower() for c in cfg.categories}
        self._languages = {lang.lower() for lang in cfg.languages}
        self._rules = cfg.ordered_rules()

    def process(self, candidates: Sequence[PublishCandidate]) -> list[PublishResult]:
        return [self.publish(candidate) for candidate in sorted(candidates, key=lambda c: c.item_id)]

    def filter_reason(self, candidate: PublishCandidate) -> str | None:
        """Return why ``candidate`` must not be published, or None."""
        decision = candidate.decision
        analysis = candidate.analysis
        if not decision.can_be_published:
            return f"dedup: {decision.reason or 'duplicate'}"
        if not analysis.is_success:
            return "analysis did not succeed"
        if (analysis.importance or 0) < self.cfg.min_importance:
            return f"importance {analysis.importance} below {self.cfg.min_importance}"
        if self._categories and (analysis.category or "").lower() not in self._categories:
            return f"category {analysis.category!r} not selected"
        if self._languages and (analysis.language or "").lower() not in self._languages:
            return f"language {analysis.language!r} not selected"
        if self.route(candidate) is None:
            return "no publication rule matched"
        return None

    def route(self, candidate: PublishCandidate) -> str | None:
        """Destination for ``candidate``: the highest-priority matching rule, else the global target."""
        if not self._rules:
            return self.cfg.target
        analysis = candidate.analysis
        for rule in self._rules:
            if rule.matches(candidate.stored.feed_id, analysis.importance, analysis.category, analysis.language):
                return rule.target
        return None

    def publish(self, candidate: PublishCandidate) -> PublishResult:
        key = candidate.decision.dedup_group_key
        reason = self.filter_reason(candidate)
        if reason is not None:
            log_event(
                self.logger,
                f"Item {candidate.item_id} filtered",
                level=logging.DEBUG,
                event="publish_filtered",
                item_id=candidate.item_id,
                reason=reason,
            )
            return PublishResult(candidate.item_id, PublishOutcome.FILTERED, key, reason=reason)

        target = self.route(candidate)
        text = self.formatter.render(candidate.stored, candidate.analysis)
        try:
            reserved = self.publications.try_reserve(key, candidate.item_id, target, now=self.clock())
            if reserved and not self.publications.mark_sending(key):
                raise RepositorySaveError(f"Reservation for {key} vanished before sending")
        except RepositorySaveError as exc:
            return self._store_failure(candidate, key, target, exc, sent=False)
        if not reserved:
            log_event(
                self.logger,
                f"Group already reserved for item {candidate.item_id}",
                level=logging.DEBUG,
                event="publish_skipped_duplicate",
                item_id=candidate.item_id,
                group=key,
            )
            return PublishResult(candidate.item_id, PublishOutcome.SKIPPED_DUPLICATE, key, reason="group already reserved")

        try:
            message_id = self.sink.publish(target, text)
        except PublishError as exc:
            try:
                self.publications.release(key)
            except RepositorySaveError as release_exc:
                self.logger.error("Could not release %s after failed send: %s", key, release_exc)
            log_event(
                self.logger,
                f"Publish failed for item {candidate.item_id}: {exc}",
                level=logging.ERROR,
                event="publish_failed",
                item_id=candidate.item_id,
                group=key,
                sink=self.sink.name,
            )
            return PublishResult(candidate.item_id, PublishOutcome.FAILED, key, reason=str(exc))

        try:
            self.publications.record_published(key, message_id, now=self.clock())
        except RepositorySaveError as exc:
            # the row stays 'sending', which keeps the group closed
            result = self._store_failure(candidate, key, target, exc, sent=True)
            result.message_id = message_id
            return result
        log_event(
            self.logger,
            f"Published item {candidate.item_id}",
            event="publish_ok",
            item_id=candidate.item_id,
            group=key,
            target=target,
            sink=self.sink.name,
            message_id=message_id,
        )
        return PublishResult(candidate.item_id, PublishOutcome.PUBLISHED, key, message_id=message_id)

    def _store_failure(
        self,
        candidate: PublishCandidate,
        key: str,
        target: str | None,
        exc: RepositorySaveError,
        sent: bool,
    ) -> PublishResult:
        reason = f"sent but not recorded: {exc}" if sent else f"not sent: {exc}"
        log_event(
            self.logger,
            f"Publication store failure for item {candidate.item_id}: {reason}",
            level=logging.ERROR,
            event="publish_store_failed",
            item_id=candidate.item_id,
            group=key,
            target=target,
            sent=sent,
        )
        return PublishResult(candidate.item_id, PublishOutcome.FAILED, key, reason=reason)
