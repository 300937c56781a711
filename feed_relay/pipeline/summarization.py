"""
AI summarization stage.

Every stored item gets exactly one analysis row. The row is claimed by
inserting it as ``pending`` before the model is called, so concurrent
workers and overlapping runs never analyse the same item twice.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
import json
import logging
import time
from typing import Any, Callable

from ..config import SummaryConfig
from ..core.types import AIAnalysis, AnalysisStatus, StoredItem, utc_now
from ..errors import AIParsingError, FeedRelayError, RepositorySaveError
from ..llm.json_parser import parse_json_object
from ..llm.prompts import build_summary_prompt, load_prompt
from ..llm.providers.base import CompletionOptions, TextProvider
from ..llm.retry import complete_with_fallback, model_chain
from ..llm.tracing import set_span_output, start_span
from ..logging_utils import log_event
from ..store.analysis import AnalysisRepository


class SummarizationService:
    def __init__(
        self,
        analyses: AnalysisRepository,
        provider: TextProvider,
        cfg: SummaryConfig,
        model: str,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ):
        self.analyses = analyses
        self.provider = provider
        self.cfg = cfg
        self.models = model_chain(model, cfg.fallback_models)
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.system_prompt = load_prompt("summarize", cfg.prompt_file)

    def process(self, items: list[StoredItem]) -> list[AIAnalysis]:
        """Summarize items concurrently; results come back in input order."""
        if not items:
            return []
        workers = max(1, min(self.cfg.max_workers, len(items)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(stored, pool.submit(self.process_item, stored)) for stored in items]
            results: list[AIAnalysis] = []
            for stored, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:
                    # unexpected errors stay item-local
                    self.logger.error(
                        "Summarization failed for item %s: %s",
                        stored.id,
                        exc,
                        exc_info=not isinstance(exc, FeedRelayError),
                    )
                    results.append(self._mark_failed(stored.id, f"{type(exc).__name__}: {exc}"))
        return results

    def _mark_failed(self, item_id: int, error: str) -> AIAnalysis:
        analysis = AIAnalysis(item_id=item_id, status=AnalysisStatus.FAILED, error=error, processed_at=self.clock())
        try:
            self.analyses.save(analysis)
        except RepositorySaveError as exc:
            self.logger.warning("Could not record failure for item %s: %s", item_id, exc)
        return analysis

    def process_item(self, stored: StoredItem) -> AIAnalysis:
        if not self.analyses.claim(stored.id, now=self.clock()):
            existing = self.analyses.get(stored.id)
            log_event(
                self.logger,
                "Item already claimed",
                level=logging.DEBUG,
                event="summary_skip_claimed",
                item_id=stored.id,
                status=existing.status.value if existing else None,
            )
            return existing or AIAnalysis(item_id=stored.id)

        prompt = build_summary_prompt(stored, self.cfg.max_chars)
        options = CompletionOptions(
            system=self.system_prompt,
            label="summarize",
            context={"item_id": stored.id},
        )
        with start_span(
            "feed_relay.summarize_item",
            kind="chain",
            input_value={"item_id": stored.id, "title": stored.item.title},
        ) as span:
            result = complete_with_fallback(
                self.provider,
                prompt,
                parse=lambda content: self.parse_answer(stored.id, content),
                models=self.models,
                retry_count=self.cfg.retry_count,
                retry_delay_seconds=self.cfg.retry_delay_seconds,
                options=options,
                sleep=self.sleep,
            )
            if result.ok and result.value is not None:
                analysis = result.value
                analysis.status = AnalysisStatus.SUCCESS
                analysis.model_used = result.model
            else:
                analysis = AIAnalysis(item_id=stored.id, status=AnalysisStatus.FAILED, error=result.error)
            analysis.attempts = result.attempts
            analysis.processed_at = self.clock()
            set_span_output(span, {"status": analysis.status.value, "importance": analysis.importance})

        self.analyses.save(analysis)
        log_event(
            self.logger,
            f"Summarized item {stored.id}: {analysis.status.value}",
            level=logging.INFO if analysis.is_success else logging.WARNING,
            event="summary_result",
            item_id=stored.id,
            status=analysis.status.value,
            model=analysis.model_used,
            attempts=analysis.attempts,
            importance=analysis.importance,
            category=analysis.category,
            error=analysis.error,
        )
        return analysis

    def parse_answer(self, item_id: int, content: str) -> AIAnalysis:
        """Validate a model answer into an AIAnalysis.

        Accepts both the nested layout requested by the packaged prompt and
        a flat object with the same field names.

        Raises:
            AIParsingError: when summary or importance is missing or invalid
        """
        data = parse_json_object(content)
        body = _section(data, "content")
        dedup = _section(data, "deduplication")

        summary = body.get("summary", data.get("summary"))
        if not isinstance(summary, str) or not summary.strip():
            raise AIParsingError("Answer has no summary", raw=content)

        importance = data.get("importance")
        if isinstance(importance, dict):
            importance = importance.get("rating")
        rating = _as_number(importance)
        if rating is None:
            raise AIParsingError(f"Answer has no numeric importance: {importance!r}", raw=content)

        category = data.get("category")
        if isinstance(category, dict):
            category = category.get("primary")
        language = data.get("article_language", data.get("language"))

        return AIAnalysis(
            item_id=item_id,
            language=_clean_str(language) or "und",
            importance=self._clamp(rating),
            category=(_clean_str(category) or "other").lower(),
            headline=_clean_str(body.get("headline", data.get("headline"))),
            summary=summary.strip(),
            keywords=_str_list(body.get("keywords", data.get("keywords"))),
            entities=_str_list(dedup.get("canonical_entities", data.get("entities"))),
            core_event=_clean_str(dedup.get("core_event", data.get("core_event"))),
            numeric_facts=_str_list(dedup.get("numeric_facts", data.get("numeric_facts"))),
        )

    def _clamp(self, rating: float) -> int:
        return max(self.cfg.importance_min, min(self.cfg.importance_max, int(round(rating))))


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, (dict, list)):
            text = json.dumps(item, ensure_ascii=False)
        else:
            text = str(item).strip()
        if text:
            out.append(text)
    return out
