"""Tests for Langfuse tracing setup behavior."""

from __future__ import annotations

import sys
import types

from feed_relay.config import LangfuseConfig
from feed_relay.llm import tracing


class DummySpan:
    def __init__(self):
        self.updates = []

    def update(self, **kwargs):
        self.updates.append(kwargs)


class DummyContext:
    def __init__(self, span):
        self.span = span
        self.exited = False

    def __enter__(self):
        return self.span

    def __exit__(self, *exc):
        self.exited = True
        return False


def _install(monkeypatch, captured):
    class DummyLangfuse:
        def __init__(self, **kwargs):
            captured["init"] = kwargs
            captured["spans"] = []
            captured["flushed"] = 0

        def start_as_current_span(self, **kwargs):
            span = DummySpan()
            captured["spans"].append((kwargs, span))
            return DummyContext(span)

        def update_current_trace(self, **kwargs):
            captured["trace"] = kwargs

        def flush(self):
            captured["flushed"] += 1

    monkeypatch.setitem(sys.modules, "langfuse", types.SimpleNamespace(Langfuse=DummyLangfuse))


def test_setup_langfuse_reads_keys_from_env(monkeypatch):
    captured: dict = {}
    _install(monkeypatch, captured)
    monkeypatch.setenv("LANGFUSE_PUBLIC_KEY", "pk-test")
    monkeypatch.setenv("LANGFUSE_SECRET_KEY", "sk-test")
    monkeypatch.setenv("LANGFUSE_HOST", "https://us.cloud.langfuse.com")

    tracing.setup_langfuse(LangfuseConfig(enabled=True, timeout_seconds=45))

    assert captured["init"]["public_key"] == "pk-test"
    assert captured["init"]["secret_key"] == "sk-test"
    assert captured["init"]["host"] == "https://us.cloud.langfuse.com"
    assert captured["init"]["timeout"] == 45
    tracing.setup_langfuse(LangfuseConfig(enabled=False))


def test_spans_are_redacted_and_flushed(monkeypatch):
    captured: dict = {}
    _install(monkeypatch, captured)
    tracing.setup_langfuse(LangfuseConfig(enabled=True, public_key="pk", secret_key="sk"))

    with tracing.start_span("feed_relay.test", kind="chain", input_value="read https://example.com/x") as span:
        tracing.set_span_output(span, {"status": "ok"})
        tracing.record_span_error(span, RuntimeError("bad ?key=AIza123"))
        tracing.update_trace(tags=["dry-run"], metadata={"feeds": 2, "skip": None})
    tracing.flush()

    kwargs, dummy = captured["spans"][0]
    assert kwargs["name"] == "feed_relay.test"
    assert kwargs["input"] == "read [REDACTED_URL]"
    assert kwargs["metadata"]["span.kind"] == "chain"
    assert dummy.updates[0] == {"output": '{"status": "ok"}'}
    assert dummy.updates[1] == {"level": "ERROR", "status_message": "bad ?key=[REDACTED]"}
    assert captured["trace"] == {"tags": ["dry-run"], "metadata": {"feeds": 2}}
    assert captured["flushed"] == 1
    tracing.setup_langfuse(LangfuseConfig(enabled=False))


def test_setup_langfuse_disables_tracer_when_keys_missing(monkeypatch):
    monkeypatch.delenv("LANGFUSE_PUBLIC_KEY", raising=False)
    monkeypatch.delenv("LANGFUSE_SECRET_KEY", raising=False)

    tracing.setup_langfuse(LangfuseConfig(enabled=True))

    assert tracing.get_tracer() is None


def test_helpers_are_noops_without_tracer():
    tracing.setup_langfuse(LangfuseConfig(enabled=False))
    with tracing.start_span("x", kind="chain") as span:
        assert span is None
        tracing.set_span_output(span, "out")
        tracing.record_span_error(span, RuntimeError("ignored"))
    tracing.flush()
