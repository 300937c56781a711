"""
Semantic deduplication stage.

Exact duplicates never reach this stage: the content-hash constraint in the
item store already collapsed them. Here each freshly summarized item is
compared against a window of recently checked items, first with a cheap
rapidfuzz pre-ranking, then with the AI model on the best candidates.

Items that match an earlier story join its dedup group; the publication
gate lets at most one item per group through.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
import time
from typing import Any, Callable, Sequence

from rapidfuzz import fuzz

from ..config import DedupConfig
from ..core.types import AIAnalysis, DecisionStatus, DedupDecision, StoredItem, WindowEntry, utc_now
from ..errors import AIParsingError, FeedRelayError
from ..llm.json_parser import parse_json_object
from ..llm.prompts import build_dedup_prompt, load_prompt
from ..llm.providers.base import CompletionOptions, TextProvider
from ..llm.retry import complete_with_fallback, model_chain
from ..llm.tracing import set_span_output, start_span
from ..logging_utils import log_event
from ..store.analysis import AnalysisRepository
from ..store.items import ItemRepository


def hash_group_key(content_hash: str) -> str:
    return f"hash:{content_hash}"


def rank_candidates(text: str, window: Sequence[WindowEntry]) -> list[tuple[WindowEntry, float]]:
    """Order window entries by token-set similarity to ``text``, best first.

    Ties keep window order (newest first).
    """
    scored = [
        (entry, float(fuzz.token_set_ratio(text, f"{entry.headline} {entry.summary}")))
        for entry in window
    ]
    return sorted(scored, key=lambda pair: -pair[1])


class DeduplicationService:
    def __init__(
        self,
        items: ItemRepository,
        analyses: AnalysisRepository,
        provider: TextProvider | None,
        cfg: DedupConfig,
        model: str,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ):
        self.items = items
        self.analyses = analyses
        self.provider = provider
        self.cfg = cfg
        self.models = model_chain(model, cfg.fallback_models)
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.system_prompt = load_prompt("dedup", cfg.prompt_file) if cfg.enabled else None

    def process(self, analyses: Sequence[AIAnalysis]) -> list[DedupDecision]:
        """Evaluate successful analyses one at a time in item-id order.

        Each evaluation reloads the window, so later items are compared
        against the decisions made for earlier ones in the same batch.
        """
        decisions: list[DedupDecision] = []
        for analysis in sorted((a for a in analyses if a.is_success), key=lambda a: a.item_id):
            try:
                decisions.append(self.evaluate(analysis))
            except Exception as exc:
                self.logger.error(
                    "Dedup failed for item %s: %s",
                    analysis.item_id,
                    exc,
                    exc_info=not isinstance(exc, FeedRelayError),
                )
                decisions.append(
                    DedupDecision(
                        item_id=analysis.item_id,
                        similarity=0.0,
                        can_be_published=False,
                        reason=f"{type(exc).__name__}: {exc}",
                        dedup_group_key="",
                        status=DecisionStatus.FAILED,
                        checked_at=self.clock(),
                    )
                )
        return decisions

    def load_window(self, item_id: int) -> list[WindowEntry]:
        since = self.clock() - timedelta(hours=self.cfg.window_hours)
        return self.analyses.recent_window(since, self.cfg.window_size, exclude_item_id=item_id)

    def evaluate(self, analysis: AIAnalysis, window: Sequence[WindowEntry] | None = None) -> DedupDecision:
        """Decide whether ``analysis`` may be published and which group it joins.

        A decision already stored for the item is returned unchanged.
        """
        existing = self.analyses.get_decision(analysis.item_id)
        if existing is not None:
            return existing
        stored = self.items.get(analysis.item_id)
        if stored is None:
            raise FeedRelayError(f"Item {analysis.item_id} not found")
        if window is None:
            window = self.load_window(analysis.item_id)

        own_group = hash_group_key(stored.item.content_hash)
        if not self.cfg.enabled or self.provider is None:
            decision = self._decision(analysis, 0.0, True, "semantic dedup disabled", own_group)
        elif not window:
            decision = self._decision(analysis, 0.0, True, "no recent items to compare", own_group)
        else:
            decision = self._compare(analysis, stored, window, own_group)

        if not self.analyses.save_decision(decision):
            return self.analyses.get_decision(analysis.item_id) or decision
        log_event(
            self.logger,
            f"Dedup item {analysis.item_id}: {'publishable' if decision.can_be_published else 'held'}",
            event="dedup_result",
            item_id=analysis.item_id,
            status=decision.status.value,
            similarity=decision.similarity,
            can_be_published=decision.can_be_published,
            duplicate_of=decision.duplicate_of_item_id,
            group=decision.dedup_group_key,
            compared=len(decision.compared_item_ids),
        )
        return decision

    def _compare(
        self,
        analysis: AIAnalysis,
        stored: StoredItem,
        window: Sequence[WindowEntry],
        own_group: str,
    ) -> DedupDecision:
        text = f"{analysis.headline or stored.item.title} {analysis.summary or ''}"
        ranked = rank_candidates(text, window)[: self.cfg.max_comparisons]
        candidates = [entry for entry, _ in ranked]
        compared = [entry.item_id for entry in candidates]
        prompt = build_dedup_prompt(analysis, stored, candidates)
        options = CompletionOptions(
            system=self.system_prompt,
            label="dedup",
            context={"item_id": analysis.item_id},
        )
        with start_span(
            "feed_relay.dedup_item",
            kind="chain",
            input_value={"item_id": analysis.item_id, "candidates": compared},
        ) as span:
            result = complete_with_fallback(
                self.provider,
                prompt,
                parse=self.parse_answer,
                models=self.models,
                retry_count=self.cfg.retry_count,
                retry_delay_seconds=self.cfg.retry_delay_seconds,
                options=options,
                sleep=self.sleep,
            )
            set_span_output(span, {"ok": result.ok, "value": result.value, "error": result.error})

        if not result.ok or result.value is None:
            # Fail closed: an item whose comparison broke is never published.
            return self._decision(
                analysis,
                0.0,
                False,
                f"comparison failed: {result.error}",
                own_group,
                status=DecisionStatus.FAILED,
                compared=compared,
            )

        similarity, duplicate_of, reason = result.value
        publishable = similarity < self.cfg.similarity_threshold
        group = own_group
        if not publishable:
            by_id = {entry.item_id: entry for entry in window}
            target = by_id.get(duplicate_of) if duplicate_of is not None else None
            if target is None:
                target = candidates[0]
                duplicate_of = target.item_id
            group = target.dedup_group_key
        return self._decision(
            analysis,
            similarity,
            publishable,
            reason,
            group,
            duplicate_of=duplicate_of,
            compared=compared,
            model=result.model,
        )

    def _decision(
        self,
        analysis: AIAnalysis,
        similarity: float,
        publishable: bool,
        reason: str,
        group: str,
        status: DecisionStatus = DecisionStatus.CHECKED,
        duplicate_of: int | None = None,
        compared: list[int] | None = None,
        model: str | None = None,
    ) -> DedupDecision:
        return DedupDecision(
            item_id=analysis.item_id,
            similarity=similarity,
            can_be_published=publishable,
            reason=reason,
            dedup_group_key=group,
            status=status,
            duplicate_of_item_id=duplicate_of,
            compared_item_ids=compared or [],
            model_used=model,
            checked_at=self.clock(),
        )

    @staticmethod
    def parse_answer(content: str) -> tuple[float, int | None, str]:
        """Return (similarity, duplicate_of_item_id, reason) from a model answer.

        Raises:
            AIParsingError: when similarity_score is missing or not numeric
        """
        data = parse_json_object(content)
        score = data.get("similarity_score")
        if isinstance(score, bool) or not isinstance(score, (int, float, str)):
            raise AIParsingError(f"Answer has no numeric similarity_score: {score!r}", raw=content)
        try:
            similarity = float(score)
        except ValueError as exc:
            raise AIParsingError(f"Answer has no numeric similarity_score: {score!r}", raw=content) from exc
        similarity = max(0.0, min(100.0, similarity))
        return similarity, _as_item_id(data.get("duplicate_of_item_id")), str(data.get("reason") or "").strip()


def _as_item_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
