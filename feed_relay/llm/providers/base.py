"""Abstract interface for AI text completion backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging
from typing import Any

import httpx

from ...config import LoggingConfig, ProviderConfig
from ...errors import ProviderError
from ...logging_utils import log_event, mask_secrets, redact_text, truncate_text
from ..tracing import record_span_error, set_span_output, start_span


@dataclass
class CompletionOptions:
    """Per-call options.

    Attributes:
        system: System instruction sent alongside the prompt
        json_mode: Ask the backend for a JSON object answer
        temperature: Overrides the provider default when set
        max_output_tokens: Overrides the provider default when set
        label: Name used for spans and LLM log events
        context: Extra fields attached to LLM log events (item id...)
    """

    system: str | None = None
    json_mode: bool = True
    temperature: float | None = None
    max_output_tokens: int | None = None
    label: str = "completion"
    context: dict[str, Any] = field(default_factory=dict)


class TextProvider(ABC):
    """A text-in, text-out model backend.

    Subclasses implement ``_request``; ``complete`` adds tracing, LLM
    logging and error normalization.
    """

    provider_name = "base"
    default_base_url = ""

    def __init__(
        self,
        cfg: ProviderConfig,
        api_key: str | None,
        log_cfg: LoggingConfig | None = None,
        llm_logger: logging.Logger | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            raise ValueError(f"Missing API key for provider {cfg.name}")
        self.cfg = cfg
        self.api_key = api_key
        self.base_url = (cfg.base_url or self.default_base_url).rstrip("/")
        self.log_cfg = log_cfg or LoggingConfig()
        self.llm_logger = llm_logger
        self._transport = transport

    def complete(self, prompt: str, model: str | None = None, options: CompletionOptions | None = None) -> str:
        """Return the model's text answer.

        Raises:
            ProviderError: on HTTP failures or an answer with no text
        """
        options = options or CompletionOptions()
        model = model or self.cfg.model
        with start_span(
            f"{self.provider_name}.{options.label}",
            kind="llm",
            input_value=prompt,
            attributes={"llm.model": model, "llm.provider": self.provider_name, **options.context},
        ) as span:
            try:
                data = self._request(prompt, model, options)
                content = self._extract_text(data)
                if not isinstance(content, str):
                    raise ValueError(f"answer is {type(content).__name__}, not text")
            except httpx.HTTPError as exc:
                record_span_error(span, exc)
                self._log_llm_response(options, model, "provider_error", str(exc), prompt)
                raise ProviderError(
                    mask_secrets(f"{self.provider_name} request failed: {type(exc).__name__}: {exc}")
                ) from exc
            except ValueError as exc:
                record_span_error(span, exc)
                self._log_llm_response(options, model, "provider_error", str(exc), prompt)
                raise ProviderError(f"{self.provider_name} returned an unusable payload: {exc}") from exc
            if not content.strip():
                exc = ProviderError(f"{self.provider_name} returned an empty answer")
                record_span_error(span, exc)
                self._log_llm_response(options, model, "empty", "", prompt)
                raise exc
            set_span_output(span, content)
            self._log_llm_response(options, model, "ok", content, prompt)
            return content

    @abstractmethod
    def _request(self, prompt: str, model: str, options: CompletionOptions) -> dict[str, Any]:
        """Send the request and return the decoded JSON body."""
        raise NotImplementedError

    @abstractmethod
    def _extract_text(self, data: dict[str, Any]) -> str:
        """Pull the answer text out of the response body."""
        raise NotImplementedError

    def _post(self, url: str, payload: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {"timeout": self.cfg.timeout_seconds, "trust_env": self.cfg.trust_env}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        with httpx.Client(**client_kwargs) as client:
            resp = client.post(url, json=payload, **kwargs)
            resp.raise_for_status()
            return resp.json()

    def _log_llm_response(
        self,
        options: CompletionOptions,
        model: str,
        status: str,
        content: str,
        prompt: str,
    ) -> None:
        if self.llm_logger is None:
            return
        detail = self.log_cfg.llm_log_detail
        redaction = self.log_cfg.llm_log_redaction
        payload: dict[str, Any] = {
            "event": f"llm_{options.label}",
            "status": status,
            "provider": self.provider_name,
            "model": model,
            **options.context,
        }
        if detail == "prompt_response":
            payload["raw_prompt"] = truncate_text(redact_text(prompt, redaction))
        payload["raw_response"] = truncate_text(redact_text(content, redaction))
        log_event(self.llm_logger, "LLM response", **payload)
