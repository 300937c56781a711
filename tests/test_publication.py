"""Tests for the publication gate, message formatting and sinks."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import json
import threading

import httpx
import pytest

from feed_relay.config import PublishConfig, PublishRule
from feed_relay.core.types import AIAnalysis, AnalysisStatus, DedupDecision, PublicationStatus
from feed_relay.errors import ConfigValidationError, PublishError, RepositorySaveError
from feed_relay.pipeline.publication import PublicationService, PublishCandidate, PublishOutcome
from feed_relay.publish.formatter import TELEGRAM_MAX_CHARS, MessageFormatter
from feed_relay.publish.sinks import TelegramSink
from feed_relay.store.publications import DryRunPublications, PublicationRepository

from conftest import RecordingSink


def _candidate(stored, importance=10, category="technology", publishable=True, group=None, language="en"):
    analysis = AIAnalysis(
        item_id=stored.id,
        status=AnalysisStatus.SUCCESS,
        language=language,
        importance=importance,
        category=category,
        headline=f"Headline for {stored.item.title}",
        summary="Summary <with> markup & stuff",
        keywords=["AI chips", "Acme"],
    )
    decision = DedupDecision(
        item_id=stored.id,
        similarity=0.0 if publishable else 90.0,
        can_be_published=publishable,
        reason="ok" if publishable else "duplicate of earlier story",
        dedup_group_key=group or f"hash:{stored.item.content_hash}",
    )
    return PublishCandidate(stored, analysis, decision)


def _service(db, clock, sink, **cfg):
    cfg.setdefault("target", "@channel")
    return PublicationService(PublicationRepository(db), sink, PublishConfig(**cfg), clock=clock)


def test_reservation_is_exclusive(db, clock, store_item):
    repo = PublicationRepository(db)
    a = store_item("A", "https://example.com/a")
    b = store_item("B", "https://example.com/b")

    assert repo.try_reserve("group-1", a.id, "@c", now=clock()) is True
    assert repo.try_reserve("group-1", b.id, "@c", now=clock()) is False
    assert repo.get("group-1").item_id == a.id

    assert repo.release("group-1") is True
    assert repo.try_reserve("group-1", b.id, "@c", now=clock()) is True


def test_published_rows_cannot_be_released(db, clock, store_item):
    repo = PublicationRepository(db)
    a = store_item("A", "https://example.com/a")
    repo.try_reserve("g", a.id, "@c", now=clock())
    repo.record_published("g", "m-1", now=clock())

    assert repo.release("g") is False
    row = repo.get("g")
    assert row.status == PublicationStatus.PUBLISHED
    assert row.message_id == "m-1"


def test_publish_sends_once_per_group(db, clock, store_item):
    sink = RecordingSink()
    service = _service(db, clock, sink)
    first = store_item("First", "https://example.com/1")
    second = store_item("Second", "https://example.com/2")

    results = service.process(
        [_candidate(second, group="shared"), _candidate(first, group="shared")]
    )

    assert [r.item_id for r in results] == [first.id, second.id]
    assert results[0].outcome == PublishOutcome.PUBLISHED
    assert results[0].message_id == "msg-1"
    assert results[1].outcome == PublishOutcome.SKIPPED_DUPLICATE
    assert len(sink.sent) == 1
    target, text = sink.sent[0]
    assert target == "@channel"
    assert "Headline for First" in text
    row = PublicationRepository(db).get("shared")
    assert row.status == PublicationStatus.PUBLISHED
    assert row.published_at == clock()


def test_sink_failure_releases_reservation(db, clock, store_item):
    stored = store_item("Story", "https://example.com/s")
    candidate = _candidate(stored)

    failed = _service(db, clock, RecordingSink(fail=True)).publish(candidate)
    assert failed.outcome == PublishOutcome.FAILED
    assert "sink down" in failed.reason
    assert PublicationRepository(db).get(candidate.decision.dedup_group_key) is None

    retried = _service(db, clock, RecordingSink()).publish(candidate)
    assert retried.outcome == PublishOutcome.PUBLISHED


@pytest.mark.parametrize(
    "kwargs, cfg, reason",
    [
        ({"publishable": False}, {}, "dedup"),
        ({"importance": 3}, {"min_importance": 5}, "importance"),
        ({"category": "sports"}, {"categories": ["Technology"]}, "category"),
    ],
)
def test_filters_skip_without_reserving(db, clock, store_item, kwargs, cfg, reason):
    stored = store_item("Story", "https://example.com/s")
    candidate = _candidate(stored, **kwargs)
    sink = RecordingSink()

    result = _service(db, clock, sink, **cfg).publish(candidate)

    assert result.outcome == PublishOutcome.FILTERED
    assert reason in result.reason
    assert sink.sent == []
    assert PublicationRepository(db).get(candidate.decision.dedup_group_key) is None


def test_stale_reservations_and_retention(db, clock, store_item):
    repo = PublicationRepository(db)
    a = store_item("A", "https://example.com/a")
    b = store_item("B", "https://example.com/b")
    repo.try_reserve("old-reserved", a.id, "@c", now=clock())
    repo.try_reserve("old-published", b.id, "@c", now=clock())
    repo.record_published("old-published", "m", now=clock())

    clock.advance(3600)
    assert repo.release_stale(clock() - timedelta(minutes=30)) == 1
    assert repo.get("old-reserved") is None

    assert repo.purge_expired(30, now=clock()) == 0
    clock.advance(31 * 86400)
    assert repo.purge_expired(30, now=clock()) == 1
    assert repo.counts() == {}


def test_formatter_escapes_html_and_adds_hashtags(store_item):
    stored = store_item("Story", "https://example.com/s?a=1&b=2")
    candidate = _candidate(stored, importance=18)

    text = MessageFormatter().render(stored, candidate.analysis)

    assert "<b>Headline for Story</b>" in text
    assert "Summary &lt;with&gt; markup &amp; stuff" in text
    assert "#AI_chips" in text
    assert "#Acme" in text
    assert "https://example.com/s?a=1&amp;b=2" in text
    assert "\U0001f525" in text


def test_formatter_truncates_long_summaries(store_item):
    stored = store_item("Story", "https://example.com/s")
    candidate = _candidate(stored)
    candidate.analysis.summary = "word " * 2000

    text = MessageFormatter().render(stored, candidate.analysis)

    assert len(text) <= TELEGRAM_MAX_CHARS
    assert "https://example.com/s" in text


def test_telegram_sink_sends_html_message():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 321}})

    sink = TelegramSink("123:abc", transport=httpx.MockTransport(handler))
    message_id = sink.publish("@channel", "<b>hi</b>")

    assert message_id == "321"
    assert captured["url"] == "https://api.telegram.org/bot123:abc/sendMessage"
    assert captured["body"]["chat_id"] == "@channel"
    assert captured["body"]["parse_mode"] == "HTML"


def test_telegram_sink_raises_on_rejection():
    def handler(request):
        return httpx.Response(400, json={"ok": False, "description": "chat not found"})

    sink = TelegramSink("123:abc", transport=httpx.MockTransport(handler))
    with pytest.raises(PublishError, match="chat not found"):
        sink.publish("@missing", "text")


def test_telegram_sink_requires_token():
    with pytest.raises(ValueError):
        TelegramSink(None)


class FlakyPublications(PublicationRepository):
    """Store whose writes fail on demand."""

    def __init__(self, db, fail_record=0, fail_reserve=0):
        super().__init__(db)
        self.fail_record = fail_record
        self.fail_reserve = fail_reserve

    def try_reserve(self, key, item_id, target, now=None):
        if self.fail_reserve:
            self.fail_reserve -= 1
            raise RepositorySaveError("database is locked")
        return super().try_reserve(key, item_id, target, now=now)

    def record_published(self, key, message_id, now=None):
        if self.fail_record:
            self.fail_record -= 1
            raise RepositorySaveError("disk I/O error")
        super().record_published(key, message_id, now=now)


def test_unrecorded_send_keeps_group_closed_and_batch_continues(db, clock, store_item):
    repo = FlakyPublications(db, fail_record=1)
    sink = RecordingSink()
    service = PublicationService(repo, sink, PublishConfig(target="@channel"), clock=clock)
    a = _candidate(store_item("A", "https://example.com/a"))
    b = _candidate(store_item("B", "https://example.com/b"))

    first, second = service.process([a, b])

    assert first.outcome == PublishOutcome.FAILED
    assert "sent but not recorded" in first.reason
    assert first.message_id == "msg-1"
    assert second.outcome == PublishOutcome.PUBLISHED
    assert len(sink.sent) == 2
    assert repo.get(a.decision.dedup_group_key).status == PublicationStatus.SENDING

    clock.advance(31 * 60)
    assert repo.release_stale(clock() - timedelta(minutes=30)) == 0

    again = service.publish(a)
    assert again.outcome == PublishOutcome.SKIPPED_DUPLICATE
    assert len(sink.sent) == 2


def test_reserve_failure_is_item_local(db, clock, store_item):
    repo = FlakyPublications(db, fail_reserve=1)
    sink = RecordingSink()
    service = PublicationService(repo, sink, PublishConfig(target="@channel"), clock=clock)
    a = _candidate(store_item("A", "https://example.com/a"))
    b = _candidate(store_item("B", "https://example.com/b"))

    first, second = service.process([a, b])

    assert first.outcome == PublishOutcome.FAILED
    assert "not sent" in first.reason
    assert second.outcome == PublishOutcome.PUBLISHED
    assert [target for target, _ in sink.sent] == ["@channel"]
    assert repo.get(a.decision.dedup_group_key) is None


def test_dry_run_gate_never_writes(db, clock, store_item):
    real = PublicationRepository(db)
    done = store_item("Done", "https://example.com/done")
    real.try_reserve("already-out", done.id, "@c", now=clock())
    real.record_published("already-out", "m-1", now=clock())

    sink = RecordingSink()
    service = PublicationService(DryRunPublications(db), sink, PublishConfig(target="@channel"), clock=clock)
    first = store_item("First", "https://example.com/1")
    second = store_item("Second", "https://example.com/2")

    results = service.process(
        [
            _candidate(done, group="already-out"),
            _candidate(first, group="fresh"),
            _candidate(second, group="fresh"),
        ]
    )

    assert [r.outcome for r in results] == [
        PublishOutcome.SKIPPED_DUPLICATE,
        PublishOutcome.PUBLISHED,
        PublishOutcome.SKIPPED_DUPLICATE,
    ]
    assert len(sink.sent) == 1
    assert real.counts() == {"published": 1}
    assert real.get("fresh") is None


def test_concurrent_reservations_have_one_winner(db, clock, store_item):
    repo = PublicationRepository(db)
    stored = [store_item(f"S{n}", f"https://example.com/{n}") for n in range(8)]
    start = threading.Barrier(len(stored))

    def reserve(item):
        start.wait()
        return repo.try_reserve("contested", item.id, "@c", now=clock())

    with ThreadPoolExecutor(max_workers=len(stored)) as pool:
        outcomes = list(pool.map(reserve, stored))

    assert outcomes.count(True) == 1
    winner = stored[outcomes.index(True)]
    assert repo.get("contested").item_id == winner.id


def test_rules_route_by_feed_and_priority(db, clock, store_item):
    sink = RecordingSink()
    cfg = PublishConfig(
        target="@fallback",
        rules=[
            {"target": "@everything", "categories": ["all"], "priority": 1},
            {"target": "@tech-a", "feed_ids": [1], "categories": ["technology"], "priority": 10},
            {"target": "@ru", "languages": ["ru"], "priority": 20},
        ],
    )
    service = PublicationService(PublicationRepository(db), sink, cfg, clock=clock)
    tech_a = _candidate(store_item("A", "https://example.com/a", feed_id=1))
    tech_b = _candidate(store_item("B", "https://example.com/b", feed_id=2))
    russian = _candidate(store_item("C", "https://example.com/c", feed_id=1), language="ru")

    service.process([tech_a, tech_b, russian])

    assert [target for target, _ in sink.sent] == ["@tech-a", "@everything", "@ru"]
    assert PublicationRepository(db).get(tech_a.decision.dedup_group_key).target == "@tech-a"


def test_no_matching_rule_filters_item(db, clock, store_item):
    cfg = PublishConfig(rules=[{"target": "@big", "min_importance": 15}])
    sink = RecordingSink()
    result = PublicationService(PublicationRepository(db), sink, cfg, clock=clock).publish(
        _candidate(store_item("A", "https://example.com/a"), importance=10)
    )
    assert result.outcome == PublishOutcome.FILTERED
    assert result.reason == "no publication rule matched"
    assert sink.sent == []


def test_language_filter(db, clock, store_item):
    sink = RecordingSink()
    service = _service(db, clock, sink, languages=["EN"])
    english = service.publish(_candidate(store_item("A", "https://example.com/a")))
    german = service.publish(_candidate(store_item("B", "https://example.com/b"), language="de"))
    assert english.outcome == PublishOutcome.PUBLISHED
    assert german.outcome == PublishOutcome.FILTERED
    assert "language" in german.reason


@pytest.mark.parametrize(
    "rule",
    [
        {"feed_ids": [1]},
        {"target": "@x", "chanel": "typo"},
        {"target": "@x", "languages": "en"},
        {"target": "@x", "enabled": "no"},
    ],
)
def test_invalid_rules_are_rejected(rule):
    with pytest.raises(ConfigValidationError):
        PublishConfig(rules=[rule])


def test_rule_objects_are_kept():
    rule = PublishRule(target="@x", priority=3)
    assert PublishConfig(rules=[rule]).rules == [rule]
