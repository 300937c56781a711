"""
Langfuse tracing for pipeline runs.

One trace per run, with a span per stage, per item and per model call.
Payloads go through the configured redaction and are truncated before they
leave the process; credentials are always masked. With tracing disabled or
without keys, every helper is a no-op.
"""

from __future__ import annotations

from contextlib import contextmanager
import json
import os
from typing import Any, Iterator

from ..config import LangfuseConfig
from ..logging_utils import mask_secrets, redact_text, truncate_text

_TRACER = None
_CFG: LangfuseConfig | None = None


def setup_langfuse(cfg: LangfuseConfig) -> None:
    """Create the Langfuse client when tracing is enabled and keys are set."""
    global _TRACER, _CFG  # noqa: PLW0603
    _CFG = cfg
    _TRACER = None
    if not cfg.enabled:
        return
    public_key = cfg.public_key or os.getenv("LANGFUSE_PUBLIC_KEY")
    secret_key = cfg.secret_key or os.getenv("LANGFUSE_SECRET_KEY")
    if not public_key or not secret_key:
        return

    from langfuse import Langfuse

    _TRACER = Langfuse(
        public_key=public_key,
        secret_key=secret_key,
        host=cfg.host or os.getenv("LANGFUSE_HOST"),
        environment=cfg.environment or os.getenv("LANGFUSE_ENVIRONMENT"),
        release=cfg.release or os.getenv("LANGFUSE_RELEASE"),
        timeout=cfg.timeout_seconds,
    )


def get_tracer():
    return _TRACER


@contextmanager
def start_span(
    name: str,
    kind: str,
    input_value: Any | None = None,
    attributes: dict[str, Any] | None = None,
) -> Iterator[Any | None]:
    """Open a span as the current observation; yields None when tracing is off."""
    if _TRACER is None:
        yield None
        return

    metadata = _scalar_metadata(attributes or {})
    metadata.setdefault("span.kind", kind)
    cm = _TRACER.start_as_current_span(name=name, input=_payload(input_value), metadata=metadata)
    span = cm.__enter__()
    try:
        yield span
    finally:
        cm.__exit__(None, None, None)


def update_trace(tags: list[str] | None = None, metadata: dict[str, Any] | None = None) -> None:
    """Tag the trace of the current run (dry run, fetch only, feed count...)."""
    if _TRACER is None:
        return
    _TRACER.update_current_trace(tags=tags or [], metadata=_scalar_metadata(metadata or {}))


def set_span_output(span: Any | None, output_value: Any) -> None:
    if span is None:
        return
    payload = _payload(output_value)
    if payload is not None:
        span.update(output=payload)


def record_span_error(span: Any | None, exc: Exception) -> None:
    if span is None:
        return
    span.update(level="ERROR", status_message=mask_secrets(str(exc)))


def flush() -> None:
    """Send buffered events; Langfuse ingests asynchronously."""
    if _TRACER is not None:
        _TRACER.flush()


def _payload(value: Any) -> str | None:
    if value is None:
        return None
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=True, default=str)
    text = mask_secrets(text)
    if _CFG is None:
        return text
    return truncate_text(redact_text(text, _CFG.redaction), _CFG.max_text_chars)


def _scalar_metadata(values: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value if isinstance(value, (str, int, float, bool)) else str(value)
        for key, value in values.items()
        if value is not None
    }
