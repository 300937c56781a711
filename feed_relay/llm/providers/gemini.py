"""Google Gemini provider."""

from __future__ import annotations

from typing import Any

from .base import CompletionOptions, TextProvider


class GeminiProvider(TextProvider):
    """Gemini generateContent backend."""

    provider_name = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com"

    def _request(self, prompt: str, model: str, options: CompletionOptions) -> dict[str, Any]:
        generation: dict[str, Any] = {
            "temperature": options.temperature if options.temperature is not None else self.cfg.temperature,
            "maxOutputTokens": options.max_output_tokens or self.cfg.max_output_tokens,
        }
        if options.json_mode:
            generation["responseMimeType"] = "application/json"
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation,
        }
        if options.system:
            payload["systemInstruction"] = {"parts": [{"text": options.system}]}
        url = f"{self.base_url}/v1beta/models/{model}:generateContent"
        return self._post(url, payload, params={"key": self.api_key})

    def _extract_text(self, data: dict[str, Any]) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return ""
        return "".join(
            part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
