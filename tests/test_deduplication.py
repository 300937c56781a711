"""Tests for semantic deduplication and its interaction with the publication gate."""

from __future__ import annotations

import json

import pytest

from feed_relay.config import DedupConfig
from feed_relay.core.types import AIAnalysis, AnalysisStatus, DecisionStatus, WindowEntry
from feed_relay.errors import AIParsingError, ProviderError
from feed_relay.pipeline.deduplication import DeduplicationService, hash_group_key, rank_candidates
from feed_relay.store.analysis import AnalysisRepository
from feed_relay.store.items import ItemRepository
from feed_relay.store.publications import PublicationRepository

from conftest import StubProvider


@pytest.fixture
def summarized(db, clock, store_item):
    """Store an item and give it a successful analysis."""
    analyses = AnalysisRepository(db)

    def _make(title: str, summary: str, link: str | None = None) -> AIAnalysis:
        stored = store_item(title, link or "https://example.com/" + title.lower().replace(" ", "-"))
        analyses.claim(stored.id, now=clock())
        analysis = AIAnalysis(
            item_id=stored.id,
            status=AnalysisStatus.SUCCESS,
            language="en",
            importance=10,
            category="technology",
            headline=title,
            summary=summary,
            entities=["Acme Corp"],
            processed_at=clock(),
        )
        analyses.save(analysis)
        return analyses.get(stored.id)

    return _make


def _service(db, clock, provider, **cfg):
    cfg.setdefault("retry_count", 0)
    return DeduplicationService(
        ItemRepository(db),
        AnalysisRepository(db),
        provider,
        DedupConfig(**cfg),
        model="primary",
        clock=clock,
        sleep=lambda _: None,
    )


def _answer(score, duplicate_of=None, reason="same event"):
    return json.dumps(
        {
            "is_duplicate": score >= 80,
            "similarity_score": score,
            "duplicate_of_item_id": duplicate_of,
            "reason": reason,
        }
    )


def test_first_item_with_empty_window_is_publishable(db, clock, summarized):
    analysis = summarized("Acme ships chip", "Acme released a 3 nm chip.")
    provider = StubProvider([])

    decision = _service(db, clock, provider).evaluate(analysis)

    assert decision.can_be_published
    assert decision.similarity == 0
    stored = ItemRepository(db).get(analysis.item_id)
    assert decision.dedup_group_key == hash_group_key(stored.item.content_hash)
    assert provider.calls == []


def test_semantic_duplicate_joins_group_and_loses_reservation(db, clock, summarized):
    publications = PublicationRepository(db)
    first = summarized("Acme ships 3 nm chip", "Acme Corp released its first 3 nm chip.")
    service = _service(db, clock, StubProvider([_answer(85, duplicate_of=first.item_id)]))

    first_decision = service.evaluate(first)
    assert publications.try_reserve(first_decision.dedup_group_key, first.item_id, "@chan", now=clock())

    second = summarized("Acme unveils new chip", "The 3 nm chip from Acme Corp is out.")
    second_decision = service.evaluate(second)

    assert second_decision.similarity == 85
    assert second_decision.can_be_published is False
    assert second_decision.duplicate_of_item_id == first.item_id
    assert second_decision.dedup_group_key == first_decision.dedup_group_key
    assert second_decision.compared_item_ids == [first.item_id]
    assert publications.try_reserve(second_decision.dedup_group_key, second.item_id, "@chan", now=clock()) is False


def test_low_similarity_keeps_own_group(db, clock, summarized):
    first = summarized("Acme ships chip", "Acme released a chip.")
    second = summarized("Rain expected tomorrow", "Weather service forecasts rain.")
    service = _service(db, clock, StubProvider([_answer(12, reason="different events")]))

    service.evaluate(first)
    decision = service.evaluate(second)

    assert decision.can_be_published
    assert decision.reason == "different events"
    assert decision.dedup_group_key != AnalysisRepository(db).get_decision(first.item_id).dedup_group_key


def test_threshold_is_strict(db, clock, summarized):
    first = summarized("Story A", "Text A")
    second = summarized("Story B", "Text B")
    service = _service(db, clock, StubProvider([_answer(79.99)]), similarity_threshold=80)
    service.evaluate(first)
    assert service.evaluate(second).can_be_published

    third = summarized("Story C", "Text C")
    service = _service(db, clock, StubProvider([_answer(80)]), similarity_threshold=80)
    assert service.evaluate(third).can_be_published is False


def test_unknown_duplicate_id_falls_back_to_best_candidate(db, clock, summarized):
    first = summarized("Acme ships chip", "Acme released a chip.")
    service = _service(db, clock, StubProvider([_answer(95, duplicate_of=9999)]))
    first_decision = service.evaluate(first)

    second = summarized("Acme ships chip today", "Acme released a chip today.")
    decision = service.evaluate(second)

    assert decision.duplicate_of_item_id == first.item_id
    assert decision.dedup_group_key == first_decision.dedup_group_key


def test_ai_failure_fails_closed(db, clock, summarized):
    first = summarized("Story A", "Text A")
    second = summarized("Story B", "Text B")
    provider = StubProvider([ProviderError("timeout"), "no json here"])
    service = _service(db, clock, provider, retry_count=1)

    service.evaluate(first)
    decision = service.evaluate(second)

    assert decision.status == DecisionStatus.FAILED
    assert decision.can_be_published is False
    assert len(provider.calls) == 2
    # A held item never shows up as a publish candidate.
    assert AnalysisRepository(db).list_publishable(since=clock().replace(year=2000)) == [first.item_id]


def test_disabled_dedup_publishes_everything(db, clock, summarized):
    first = summarized("Story A", "Text A")
    second = summarized("Story A again", "Text A")
    provider = StubProvider([])
    service = _service(db, clock, provider, enabled=False)

    decisions = service.process([second, first])

    assert [d.item_id for d in decisions] == [first.item_id, second.item_id]
    assert all(d.can_be_published for d in decisions)
    assert provider.calls == []


def test_existing_decision_is_returned_unchanged(db, clock, summarized):
    analysis = summarized("Story A", "Text A")
    service = _service(db, clock, StubProvider([]))
    first = service.evaluate(analysis)
    clock.advance(60)
    again = service.evaluate(analysis)
    assert again.checked_at == first.checked_at
    assert again.dedup_group_key == first.dedup_group_key


def test_process_compares_against_earlier_items_in_same_batch(db, clock, summarized):
    first = summarized("Acme ships chip", "Acme released a chip.")
    second = summarized("Acme chip shipped", "Acme released a chip.")
    provider = StubProvider([_answer(90, duplicate_of=first.item_id)])

    decisions = _service(db, clock, provider).process([first, second])

    assert decisions[0].can_be_published
    assert decisions[1].can_be_published is False
    assert decisions[1].dedup_group_key == decisions[0].dedup_group_key


def test_rank_candidates_orders_by_similarity():
    window = [
        WindowEntry(item_id=1, content_hash="a", dedup_group_key="g1", headline="Weather report", summary="Rain"),
        WindowEntry(item_id=2, content_hash="b", dedup_group_key="g2", headline="Acme ships chip", summary="3 nm"),
    ]
    ranked = rank_candidates("Acme ships new chip 3 nm", window)
    assert [entry.item_id for entry, _ in ranked] == [2, 1]
    assert ranked[0][1] > ranked[1][1]


@pytest.mark.parametrize("content", ['{"reason": "x"}', '{"similarity_score": "high"}', '{"similarity_score": true}'])
def test_parse_answer_requires_numeric_score(content):
    with pytest.raises(AIParsingError):
        DeduplicationService.parse_answer(content)


def test_parse_answer_clamps_score():
    assert DeduplicationService.parse_answer('{"similarity_score": 140}')[0] == 100.0
    assert DeduplicationService.parse_answer('{"similarity_score": "-5", "duplicate_of_item_id": "3"}')[:2] == (0.0, 3)
