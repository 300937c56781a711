"""
Retry with model fallback for AI calls.

Each model in the chain (primary first, then the fallbacks) gets
``retry_count + 1`` attempts. Between attempts on the same model the delay
doubles from ``retry_delay`` and is capped at ``MAX_DELAY_SECONDS``.
Provider failures and unparseable answers are both retried.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Generic, Sequence, TypeVar

from ..errors import AIParsingError, ProviderError
from ..logging_utils import log_event
from .providers.base import CompletionOptions, TextProvider

T = TypeVar("T")

MAX_DELAY_SECONDS = 5.0

logger = logging.getLogger(__name__)


@dataclass
class FallbackResult(Generic[T]):
    """Outcome of ``complete_with_fallback``.

    ``value`` is set on success; otherwise ``error`` holds the last failure.
    """

    value: T | None
    model: str | None
    attempts: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def model_chain(primary: str, fallbacks: Sequence[str]) -> list[str]:
    """Primary model followed by the fallbacks, without duplicates."""
    chain: list[str] = []
    for model in [primary, *fallbacks]:
        if model and model not in chain:
            chain.append(model)
    return chain


def retry_delay(base: float, attempt: int) -> float:
    return min(MAX_DELAY_SECONDS, base * (2**attempt))


def complete_with_fallback(
    provider: TextProvider,
    prompt: str,
    parse: Callable[[str], T],
    models: Sequence[str],
    retry_count: int = 2,
    retry_delay_seconds: float = 0.5,
    options: CompletionOptions | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FallbackResult[T]:
    """Call ``provider`` until ``parse`` accepts an answer or every attempt fails."""
    attempts = 0
    last_error: str | None = None
    for model in models:
        for attempt in range(retry_count + 1):
            attempts += 1
            try:
                content = provider.complete(prompt, model=model, options=options)
                return FallbackResult(value=parse(content), model=model, attempts=attempts)
            except (ProviderError, AIParsingError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                log_event(
                    logger,
                    "AI attempt failed",
                    level=logging.WARNING,
                    event="ai_attempt_failed",
                    model=model,
                    attempt=attempt + 1,
                    error=last_error,
                    **(options.context if options else {}),
                )
                if attempt < retry_count:
                    sleep(retry_delay(retry_delay_seconds, attempt))
    return FallbackResult(value=None, model=None, attempts=attempts, error=last_error or "No models configured")
