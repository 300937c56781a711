"""
Feed polling with conditional GET and exponential backoff.

One pass over a set of feeds:
1. Skip disabled feeds and feeds still in backoff (no HTTP call)
2. Send one conditional GET with the stored ETag / Last-Modified
3. Classify the response and compute the next FeedState
4. Persist the new state immediately

Feeds run concurrently on a bounded thread pool, serialized per feed id.
A failure in one feed never stops the others.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from enum import Enum
import logging
import threading
import time
from typing import Any, Callable, Iterable

from ..config import FetchConfig
from ..core.locks import KeyedLocks
from ..core.state import BackoffPolicy, DEFAULT_BACKOFF, FeedState
from ..core.types import FeedConfig, RawItem, utc_now
from ..errors import FeedParseError, TransportError
from ..logging_utils import log_event
from ..store.feed_state import FeedStateRepository
from .parser import FeedParser
from .transport import HttpResponse, HttpTransport


class FetchOutcome(str, Enum):
    DISABLED = "disabled"
    SKIPPED_BACKOFF = "skipped_backoff"
    SUCCESS = "success"
    NOT_MODIFIED = "not_modified"
    ERROR = "error"
    PARSE_ERROR = "parse_error"


class ErrorClass(str, Enum):
    NETWORK = "network"
    SERVER = "server"
    CLIENT = "client"
    INTERNAL = "internal"


@dataclass
class FetchResult:
    """Outcome of polling one feed.

    Attributes:
        feed_id: The polled feed
        outcome: What happened
        status: HTTP status (0 for network failures, None when no request was made)
        items: Parsed entries (SUCCESS only)
        error: Human-readable error message
        error_class: network, server, client or internal
        backoff_remaining: Seconds left when skipped for backoff
        state: The FeedState after this poll
        body_bytes: Size of the response body
    """

    feed_id: int
    outcome: FetchOutcome
    status: int | None = None
    items: list[RawItem] = field(default_factory=list)
    error: str | None = None
    error_class: ErrorClass | None = None
    backoff_remaining: float | None = None
    state: FeedState | None = None
    body_bytes: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in (FetchOutcome.SUCCESS, FetchOutcome.NOT_MODIFIED)


@dataclass
class FetchMetrics:
    """Counters for one polling pass. Informational only."""

    attempts: int = 0
    fetch_2xx: int = 0
    fetch_304: int = 0
    fetch_errors: int = 0
    parse_errors: int = 0
    skipped_backoff: int = 0
    skipped_disabled: int = 0
    items_parsed: int = 0
    body_bytes: int = 0
    duration_seconds: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, result: FetchResult, elapsed: float) -> None:
        with self._lock:
            self.duration_seconds += elapsed
            self.body_bytes += result.body_bytes
            outcome = result.outcome
            if outcome == FetchOutcome.DISABLED:
                self.skipped_disabled += 1
                return
            if outcome == FetchOutcome.SKIPPED_BACKOFF:
                self.skipped_backoff += 1
                return
            if result.status is not None:
                self.attempts += 1
            if outcome == FetchOutcome.SUCCESS:
                self.fetch_2xx += 1
                self.items_parsed += len(result.items)
            elif outcome == FetchOutcome.NOT_MODIFIED:
                self.fetch_304 += 1
            elif outcome == FetchOutcome.PARSE_ERROR:
                self.parse_errors += 1
            else:
                self.fetch_errors += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "fetch_2xx": self.fetch_2xx,
            "fetch_304": self.fetch_304,
            "fetch_errors": self.fetch_errors,
            "parse_errors": self.parse_errors,
            "skipped_backoff": self.skipped_backoff,
            "skipped_disabled": self.skipped_disabled,
            "items_parsed": self.items_parsed,
            "body_bytes": self.body_bytes,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class FetchRunner:
    """Polls feeds and owns every FeedState transition."""

    def __init__(
        self,
        state_repo: FeedStateRepository,
        transport: HttpTransport,
        parser: FeedParser | None = None,
        policy: BackoffPolicy = DEFAULT_BACKOFF,
        fetch_cfg: FetchConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ):
        self.state_repo = state_repo
        self.transport = transport
        self.parser = parser or FeedParser()
        self.policy = policy
        self.fetch_cfg = fetch_cfg or FetchConfig()
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = FetchMetrics()
        self._locks = KeyedLocks()

    def run_for_feed(self, config: FeedConfig) -> FetchResult:
        started = time.monotonic()
        with self._locks.hold(config.id):
            result = self._poll(config)
        self.metrics.record(result, time.monotonic() - started)
        return result

    def run_for_all_feeds(self, configs: Iterable[FeedConfig]) -> dict[int, FetchResult]:
        """Poll every feed concurrently; results are keyed by feed id in input order."""
        configs = list(configs)
        self.metrics = FetchMetrics()
        if not configs:
            return {}
        workers = max(1, min(self.fetch_cfg.max_workers, len(configs)))
        results: dict[int, FetchResult] = {}
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [(cfg, pool.submit(self.run_for_feed, cfg)) for cfg in configs]
            for cfg, future in futures:
                try:
                    results[cfg.id] = future.result()
                except Exception as exc:  # noqa: BLE001
                    self.logger.exception("Unexpected error polling feed %s", cfg.id)
                    result = FetchResult(
                        feed_id=cfg.id,
                        outcome=FetchOutcome.ERROR,
                        error=f"{type(exc).__name__}: {exc}",
                        error_class=ErrorClass.INTERNAL,
                    )
                    self.metrics.record(result, 0.0)
                    results[cfg.id] = result
        log_event(
            self.logger,
            "Fetch pass complete",
            event="fetch_pass_complete",
            feeds=len(configs),
            **self.metrics.as_dict(),
        )
        return results

    def _poll(self, config: FeedConfig) -> FetchResult:
        if not config.enabled:
            log_event(
                self.logger,
                "Feed disabled",
                level=logging.DEBUG,
                event="feed_disabled",
                feed_id=config.id,
            )
            return FetchResult(feed_id=config.id, outcome=FetchOutcome.DISABLED)

        now = self.clock()
        state = self.state_repo.get(config.id) or FeedState.initial()
        if state.is_in_backoff(now):
            remaining = state.backoff_remaining(now)
            log_event(
                self.logger,
                "Feed in backoff",
                level=logging.DEBUG,
                event="feed_backoff_skip",
                feed_id=config.id,
                error_count=state.error_count,
                backoff_remaining=remaining,
            )
            return FetchResult(
                feed_id=config.id,
                outcome=FetchOutcome.SKIPPED_BACKOFF,
                backoff_remaining=remaining,
                state=state,
            )

        try:
            response = self.transport.request(
                "GET",
                config.url,
                headers=self._build_headers(config, state),
                timeout=config.timeout,
                retries=config.retries,
                proxy=config.proxy,
            )
        except TransportError as exc:
            new_state = state.with_failed_fetch(0, policy=self.policy, now=self.clock())
            return self._finish(
                config,
                new_state,
                FetchResult(
                    feed_id=config.id,
                    outcome=FetchOutcome.ERROR,
                    status=0,
                    error=str(exc),
                    error_class=ErrorClass.NETWORK,
                ),
            )

        return self._classify(config, state, response)

    def _classify(self, config: FeedConfig, state: FeedState, response: HttpResponse) -> FetchResult:
        now = self.clock()
        status = response.status
        base = {"feed_id": config.id, "status": status, "body_bytes": len(response.body)}

        if status == 304:
            new_state = state.with_successful_fetch(
                response.header("etag") or state.etag,
                response.header("last-modified") or state.last_modified,
                status,
                now=now,
            )
            return self._finish(config, new_state, FetchResult(outcome=FetchOutcome.NOT_MODIFIED, **base))

        if 200 <= status < 300:
            try:
                parsed = self.parser.parse(response.body, max_items=config.max_items)
            except FeedParseError as exc:
                new_state = state.with_failed_fetch(status, policy=self.policy, now=now)
                return self._finish(
                    config,
                    new_state,
                    FetchResult(
                        outcome=FetchOutcome.PARSE_ERROR,
                        error=str(exc),
                        **base,
                    ),
                )
            new_state = state.with_successful_fetch(
                response.header("etag"),
                response.header("last-modified"),
                status,
                now=now,
            )
            return self._finish(
                config,
                new_state,
                FetchResult(outcome=FetchOutcome.SUCCESS, items=parsed.items, **base),
            )

        error_class = ErrorClass.SERVER if 500 <= status < 600 else ErrorClass.CLIENT
        backoff_seconds = None
        if status in (429, 503):
            backoff_seconds = parse_retry_after(response.header("retry-after"), now)
        new_state = state.with_failed_fetch(
            status,
            backoff_seconds=backoff_seconds,
            policy=self.policy,
            now=now,
        )
        return self._finish(
            config,
            new_state,
            FetchResult(
                outcome=FetchOutcome.ERROR,
                error=f"HTTP {status}",
                error_class=error_class,
                **base,
            ),
        )

    def _finish(self, config: FeedConfig, new_state: FeedState, result: FetchResult) -> FetchResult:
        self.state_repo.save(config.id, new_state, now=self.clock())
        result.state = new_state
        level = logging.INFO if result.ok else logging.WARNING
        log_event(
            self.logger,
            f"Feed {config.label}: {result.outcome.value}",
            level=level,
            event="feed_fetch",
            feed_id=config.id,
            url=config.url,
            outcome=result.outcome.value,
            status=result.status,
            items=len(result.items),
            error=result.error,
            error_class=result.error_class.value if result.error_class else None,
            error_count=new_state.error_count,
            backoff_until=new_state.backoff_until.isoformat() if new_state.backoff_until else None,
        )
        return result

    def _build_headers(self, config: FeedConfig, state: FeedState) -> dict[str, str]:
        headers = {
            "User-Agent": self.fetch_cfg.user_agent,
            "Accept": self.fetch_cfg.accept,
        }
        headers.update(config.headers)
        if state.etag:
            headers["If-None-Match"] = state.etag
        if state.last_modified:
            headers["If-Modified-Since"] = state.last_modified
        return headers


def parse_retry_after(value: str | None, now: datetime) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=now.tzinfo)
    return max(0.0, (when - now).total_seconds())
