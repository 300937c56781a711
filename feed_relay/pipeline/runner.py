"""
Main pipeline orchestration for Feed Relay.

This module coordinates the entire workflow:
1. Poll feeds (conditional GET, backoff)
2. Store new items (exact-match dedup by content hash)
3. Summarize unanalyzed items via LLM
4. Semantic dedup against the recent window
5. Publish cleared items through the reservation gate

Every stage is partial-failure tolerant: problems are recorded in the
returned PipelineReport and the run moves on.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from pathlib import Path
import time
from typing import Any, Callable

import httpx
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from ..config import AppConfig, get_bot_token
from ..core.types import AIAnalysis, DedupDecision, utc_now
from ..errors import ConfigValidationError, RepositorySaveError
from ..fetch.runner import FetchOutcome, FetchResult, FetchRunner
from ..fetch.transport import HttpTransport
from ..llm.providers.base import TextProvider
from ..llm.providers.factory import create_provider
from ..llm.tracing import set_span_output, setup_langfuse, start_span, update_trace
from ..logging_utils import log_event, setup_llm_logger, setup_logging
from ..publish.sinks import ConsoleSink, MessageSink, TelegramSink
from ..store.analysis import AnalysisRepository
from ..store.database import Database
from ..store.feed_state import FeedStateRepository
from ..store.items import ItemRepository
from ..store.publications import DryRunPublications, PublicationRepository
from .deduplication import DeduplicationService
from .publication import PublicationService, PublishCandidate, PublishOutcome, PublishResult
from .summarization import SummarizationService


@dataclass
class PipelineReport:
    """Structured result of one pipeline run.

    Attributes:
        feeds: Per-feed fetch results keyed by feed id
        new_item_ids: Ids of items stored for the first time in this run
        existing_items: Fetched items whose content hash was already stored
        analyses: Summarization results produced in this run
        decisions: Dedup decisions produced in this run
        publications: Publication results produced in this run
        warnings: Non-fatal problems (rejected feeds, failed saves...)
        fetch_metrics: Aggregate fetch counters
    """

    feeds: dict[int, FetchResult] = field(default_factory=dict)
    new_item_ids: list[int] = field(default_factory=list)
    existing_items: int = 0
    analyses: list[AIAnalysis] = field(default_factory=list)
    decisions: list[DedupDecision] = field(default_factory=list)
    publications: list[PublishResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    fetch_metrics: dict[str, Any] = field(default_factory=dict)

    def counters(self) -> dict[str, Any]:
        return {
            "feeds": dict(Counter(r.outcome.value for r in self.feeds.values())),
            "items_new": len(self.new_item_ids),
            "items_existing": self.existing_items,
            "analyses": dict(Counter(a.status.value for a in self.analyses)),
            "decisions": {
                "publishable": sum(1 for d in self.decisions if d.can_be_published),
                "held": sum(1 for d in self.decisions if not d.can_be_published),
            },
            "publications": dict(Counter(p.outcome.value for p in self.publications)),
            "warnings": len(self.warnings),
        }


def run_pipeline(
    cfg: AppConfig,
    db: Database | None = None,
    provider: TextProvider | None = None,
    sink: MessageSink | None = None,
    transport: httpx.BaseTransport | None = None,
    show_progress: bool = True,
    console: Console | None = None,
    dry_run: bool = False,
    fetch_only: bool = False,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineReport:
    """Run one complete pass of the pipeline.

    Collaborators that are not passed in are built from ``cfg``. The store
    is opened from ``cfg.store.path`` and closed at the end when ``db`` is
    not supplied.

    Raises:
        StoreUnavailableError: if the database cannot be opened
        PromptNotFoundError: if a prompt template is missing
        ConfigValidationError: if the AI service or the sink cannot be configured
    """
    log_dir = Path(cfg.logging.directory)
    logger = setup_logging(cfg.logging, log_dir)
    llm_logger = setup_llm_logger(cfg.logging, log_dir)
    setup_langfuse(cfg.langfuse)
    console = console or Console()

    owns_db = db is None
    db = db or Database(cfg.store.path)
    report = PipelineReport(warnings=list(cfg.feed_errors))
    for warning in cfg.feed_errors:
        logger.warning("Rejected feed config: %s", warning)

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        disable=not show_progress,
    )
    try:
        with progress, start_span(
            "feed_relay.run",
            kind="chain",
            input_value={"feeds": len(cfg.feeds), "dry_run": dry_run, "fetch_only": fetch_only},
        ) as run_span:
            log_event(logger, "Pipeline start", event="pipeline_start", feeds=len(cfg.feeds), dry_run=dry_run)
            update_trace(
                tags=[tag for tag, on in (("dry-run", dry_run), ("fetch-only", fetch_only)) if on],
                metadata={"feeds": len(cfg.feeds), "provider": cfg.provider.name, "model": cfg.provider.model},
            )
            stages = progress.add_task("Stages", total=2 if fetch_only else 4)

            items = ItemRepository(db)
            _fetch_stage(cfg, db, items, transport, clock, logger, report)
            progress.advance(stages, 1)
            if fetch_only:
                _finish(logger, run_span, report)
                return report

            analyses = AnalysisRepository(db)
            publications = DryRunPublications(db) if dry_run else PublicationRepository(db)
            _housekeeping(cfg, analyses, publications, clock, logger)

            pending = items.list_unanalyzed(cfg.summary.batch_limit)
            undecided_before = analyses.list_undecided(cfg.summary.batch_limit)
            if (pending or undecided_before) and provider is None:
                provider = create_provider(cfg.provider, cfg.logging, llm_logger)

            summarize_task = progress.add_task("Summarize", total=len(pending))
            if pending:
                summarizer = SummarizationService(
                    analyses, provider, cfg.summary, cfg.provider.model, clock=clock, sleep=sleep, logger=logger
                )
                with start_span("feed_relay.summarize_batch", kind="chain", input_value={"count": len(pending)}):
                    report.analyses = summarizer.process(pending)
            progress.update(summarize_task, completed=len(pending))
            progress.advance(stages, 1)

            undecided = analyses.list_undecided(cfg.summary.batch_limit)
            dedup_task = progress.add_task("Dedup", total=len(undecided))
            if undecided:
                dedup = DeduplicationService(
                    items, analyses, provider, cfg.dedup, cfg.provider.model, clock=clock, sleep=sleep, logger=logger
                )
                with start_span("feed_relay.dedup_batch", kind="chain", input_value={"count": len(undecided)}):
                    report.decisions = dedup.process(undecided)
            progress.update(dedup_task, completed=len(undecided))
            progress.advance(stages, 1)

            if cfg.publish.enabled:
                candidates = _publish_candidates(cfg, items, analyses, clock)
                publish_task = progress.add_task("Publish", total=len(candidates))
                if candidates:
                    sink = sink or _build_sink(cfg, console, dry_run)
                    service = PublicationService(publications, sink, cfg.publish, clock=clock, logger=logger)
                    with start_span("feed_relay.publish_batch", kind="chain", input_value={"count": len(candidates)}):
                        report.publications = service.process(candidates)
                    for result in report.publications:
                        if result.outcome == PublishOutcome.FAILED:
                            report.warnings.append(f"item {result.item_id}: publish failed: {result.reason}")
                progress.update(publish_task, completed=len(candidates))
            progress.advance(stages, 1)

            _finish(logger, run_span, report)
            return report
    finally:
        if owns_db:
            db.close()


def _fetch_stage(
    cfg: AppConfig,
    db: Database,
    items: ItemRepository,
    transport: httpx.BaseTransport | None,
    clock: Callable[[], datetime],
    logger: logging.Logger,
    report: PipelineReport,
) -> None:
    runner = FetchRunner(
        FeedStateRepository(db),
        HttpTransport(
            trust_env=cfg.fetch.trust_env,
            follow_redirects=cfg.fetch.follow_redirects,
            transport=transport,
        ),
        policy=cfg.backoff.to_policy(),
        fetch_cfg=cfg.fetch,
        clock=clock,
        logger=logger,
    )
    with start_span("feed_relay.fetch", kind="chain", input_value={"feeds": len(cfg.feeds)}) as span:
        report.feeds = runner.run_for_all_feeds(cfg.feeds)
        report.fetch_metrics = runner.metrics.as_dict()
        set_span_output(span, report.fetch_metrics)

    for feed_id, result in report.feeds.items():
        if result.outcome in (FetchOutcome.ERROR, FetchOutcome.PARSE_ERROR):
            report.warnings.append(f"feed {feed_id}: {result.outcome.value}: {result.error}")
        if result.outcome != FetchOutcome.SUCCESS:
            continue
        for item in result.items:
            try:
                stored = items.store(feed_id, item, now=clock())
            except RepositorySaveError as exc:
                logger.warning("Could not store item from feed %s: %s", feed_id, exc)
                report.warnings.append(f"feed {feed_id}: {exc}")
                continue
            if stored.was_new:
                report.new_item_ids.append(stored.id)
            else:
                report.existing_items += 1
    log_event(
        logger,
        "Items stored",
        event="items_stored",
        new=len(report.new_item_ids),
        existing=report.existing_items,
    )


def _housekeeping(
    cfg: AppConfig,
    analyses: AnalysisRepository,
    publications: PublicationRepository,
    clock: Callable[[], datetime],
    logger: logging.Logger,
) -> None:
    now = clock()
    released = analyses.release_stale_pending(now - timedelta(minutes=cfg.summary.stale_pending_minutes))
    stale = publications.release_stale(now - timedelta(minutes=cfg.publish.stale_reservation_minutes))
    purged = publications.purge_expired(cfg.publish.retention_days, now=now)
    if released or stale or purged:
        log_event(
            logger,
            "Housekeeping",
            event="housekeeping",
            released_pending=released,
            released_reservations=stale,
            purged_publications=purged,
        )


def _publish_candidates(
    cfg: AppConfig,
    items: ItemRepository,
    analyses: AnalysisRepository,
    clock: Callable[[], datetime],
) -> list[PublishCandidate]:
    since = clock() - timedelta(hours=cfg.dedup.window_hours)
    candidates: list[PublishCandidate] = []
    for item_id in analyses.list_publishable(since, cfg.summary.batch_limit):
        stored = items.get(item_id)
        analysis = analyses.get(item_id)
        decision = analyses.get_decision(item_id)
        if stored and analysis and decision:
            candidates.append(PublishCandidate(stored, analysis, decision))
    return candidates


def _build_sink(cfg: AppConfig, console: Console, dry_run: bool) -> MessageSink:
    if dry_run or cfg.publish.sink == "console":
        return ConsoleSink(console)
    if cfg.publish.sink == "telegram":
        return TelegramSink(
            get_bot_token(cfg.publish),
            api_base=cfg.publish.api_base,
            timeout=cfg.publish.timeout_seconds,
            disable_web_page_preview=cfg.publish.disable_web_page_preview,
        )
    raise ConfigValidationError(f"Unsupported sink: {cfg.publish.sink}. Supported: console, telegram")


def _finish(logger: logging.Logger, run_span: Any, report: PipelineReport) -> None:
    counters = report.counters()
    log_event(logger, "Pipeline complete", event="pipeline_complete", **counters)
    set_span_output(run_span, counters)
