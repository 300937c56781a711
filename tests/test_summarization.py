"""Tests for the summarization stage: claiming, retries, fallback and parsing."""

from __future__ import annotations

import json

import pytest

from feed_relay.config import SummaryConfig
from feed_relay.core.types import AnalysisStatus
from feed_relay.errors import AIParsingError, ProviderError
from feed_relay.llm.retry import model_chain, retry_delay
from feed_relay.pipeline.summarization import SummarizationService
from feed_relay.store.analysis import AnalysisRepository

from conftest import StubProvider, summary_json


def _service(db, clock, provider, sleeps=None, **cfg):
    cfg.setdefault("retry_count", 1)
    cfg.setdefault("retry_delay_seconds", 0.5)
    sleeps = sleeps if sleeps is not None else []
    return SummarizationService(
        AnalysisRepository(db),
        provider,
        SummaryConfig(**cfg),
        model="primary",
        clock=clock,
        sleep=sleeps.append,
    )


def test_successful_summary_is_stored(db, clock, store_item):
    stored = store_item("Acme ships chip", "https://example.com/acme")
    provider = StubProvider([summary_json(importance=12, category="Technology", headline="Acme ships 3 nm chip")])

    analysis = _service(db, clock, provider).process_item(stored)

    assert analysis.status == AnalysisStatus.SUCCESS
    assert analysis.importance == 12
    assert analysis.category == "technology"
    assert analysis.headline == "Acme ships 3 nm chip"
    assert analysis.keywords == ["ai", "chips"]
    assert analysis.entities == ["Acme Corp"]
    assert analysis.model_used == "primary"
    assert analysis.attempts == 1
    assert provider.calls[0]["label"] == "summarize"
    assert "Acme ships chip" in provider.calls[0]["prompt"]

    saved = AnalysisRepository(db).get(stored.id)
    assert saved.status == AnalysisStatus.SUCCESS
    assert saved.summary == "A short factual summary."
    assert saved.processed_at == clock()


def test_retries_then_falls_back_to_next_model(db, clock, store_item):
    stored = store_item("Story", "https://example.com/s")
    provider = StubProvider(["not json", ProviderError("503 from upstream"), summary_json()])
    sleeps = []

    analysis = _service(db, clock, provider, sleeps=sleeps, fallback_models=["backup"]).process_item(stored)

    assert analysis.is_success
    assert analysis.model_used == "backup"
    assert analysis.attempts == 3
    assert [call["model"] for call in provider.calls] == ["primary", "primary", "backup"]
    assert sleeps == [0.5]


def test_exhausted_attempts_mark_failed(db, clock, store_item):
    stored = store_item("Story", "https://example.com/s")
    provider = StubProvider(lambda prompt, model, options: ProviderError("quota exceeded"))

    analysis = _service(db, clock, provider, fallback_models=["backup"]).process_item(stored)

    assert analysis.status == AnalysisStatus.FAILED
    assert analysis.attempts == 4
    assert "quota exceeded" in analysis.error
    assert AnalysisRepository(db).get(stored.id).status == AnalysisStatus.FAILED


def test_claimed_item_is_not_processed_again(db, clock, store_item):
    stored = store_item("Story", "https://example.com/s")
    provider = StubProvider([summary_json()])
    service = _service(db, clock, provider)

    service.process_item(stored)
    again = service.process_item(stored)

    assert len(provider.calls) == 1
    assert again.is_success


def test_process_keeps_input_order(db, clock, store_item):
    items = [store_item(f"Story {n}", f"https://example.com/{n}") for n in range(5)]
    provider = StubProvider(lambda prompt, model, options: summary_json())

    results = _service(db, clock, provider, max_workers=3).process(items)

    assert [a.item_id for a in results] == [s.id for s in items]
    assert all(a.is_success for a in results)
    assert AnalysisRepository(db).counts() == {"success": 5}


def test_importance_is_clamped(db, clock):
    service = _service(db, clock, StubProvider([]), importance_min=1, importance_max=20)
    assert service.parse_answer(1, summary_json(importance=99)).importance == 20
    assert service.parse_answer(1, summary_json(importance=-4)).importance == 1


def test_flat_answer_and_defaults(db, clock):
    service = _service(db, clock, StubProvider([]))
    content = "```json\n" + json.dumps({"summary": "Flat summary", "importance": "7"}) + "\n```"
    analysis = service.parse_answer(3, content)
    assert analysis.summary == "Flat summary"
    assert analysis.importance == 7
    assert analysis.language == "und"
    assert analysis.category == "other"
    assert analysis.keywords == []


@pytest.mark.parametrize(
    "payload",
    [
        {"importance": 5},
        {"summary": "   ", "importance": 5},
        {"summary": "ok", "importance": "high"},
        {"summary": "ok"},
    ],
)
def test_invalid_answers_raise(db, clock, payload):
    service = _service(db, clock, StubProvider([]))
    with pytest.raises(AIParsingError):
        service.parse_answer(1, json.dumps(payload))


def test_retry_helpers():
    assert model_chain("a", ["b", "a", "", "c"]) == ["a", "b", "c"]
    assert retry_delay(0.5, 0) == 0.5
    assert retry_delay(0.5, 1) == 1.0
    assert retry_delay(0.5, 4) == 5.0


def test_unexpected_error_fails_only_that_item(db, clock, store_item):
    broken = store_item("Broken story", "https://example.com/broken")
    fine = store_item("Fine story", "https://example.com/fine")

    def answer(prompt, model, options):
        if "Broken story" in prompt:
            raise AttributeError("'list' object has no attribute 'strip'")
        return summary_json()

    results = _service(db, clock, StubProvider(answer), max_workers=2).process([broken, fine])

    assert [r.item_id for r in results] == [broken.id, fine.id]
    assert results[0].status == AnalysisStatus.FAILED
    assert "AttributeError" in results[0].error
    assert results[1].status == AnalysisStatus.SUCCESS
    stored = AnalysisRepository(db).get(broken.id)
    assert stored.status == AnalysisStatus.FAILED
    assert "AttributeError" in stored.error
