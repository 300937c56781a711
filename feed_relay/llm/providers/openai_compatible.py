"""OpenAI-compatible chat completions provider (OpenAI, OpenRouter, vLLM...)."""

from __future__ import annotations

from typing import Any

from .base import CompletionOptions, TextProvider


class OpenAICompatibleProvider(TextProvider):
    provider_name = "openai_compatible"
    default_base_url = "https://api.openai.com/v1"

    def _request(self, prompt: str, model: str, options: CompletionOptions) -> dict[str, Any]:
        messages = []
        if options.system:
            messages.append({"role": "system", "content": options.system})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": options.temperature if options.temperature is not None else self.cfg.temperature,
            "max_tokens": options.max_output_tokens or self.cfg.max_output_tokens,
        }
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}
        url = f"{self.base_url}/chat/completions"
        return self._post(url, payload, headers={"Authorization": f"Bearer {self.api_key}"})

    def _extract_text(self, data: dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        if isinstance(content, list):
            # content-part arrays: [{"type": "text", "text": "..."}, ...]
            return "".join(_part_text(part) for part in content)
        if content is not None and not isinstance(content, str):
            raise ValueError(f"unexpected message content: {type(content).__name__}")
        return content or ""


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, dict) and isinstance(part.get("text"), str):
        return part["text"]
    return ""
