"""Provider registry: maps ``provider.name`` from the config to a backend class."""

from __future__ import annotations

import logging

import httpx

from ...config import LoggingConfig, ProviderConfig, api_key_env_name, get_api_key
from ...errors import ConfigValidationError
from .base import TextProvider
from .gemini import GeminiProvider
from .openai_compatible import OpenAICompatibleProvider

_PROVIDERS: dict[str, type[TextProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAICompatibleProvider,
    "openai_compatible": OpenAICompatibleProvider,
}


def _canonical(name: str) -> str:
    return name.strip().lower().replace("-", "_")


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def create_provider(
    provider_cfg: ProviderConfig,
    log_cfg: LoggingConfig,
    llm_logger: logging.Logger | None,
    transport: httpx.BaseTransport | None = None,
) -> TextProvider:
    """Build the configured backend.

    Raises:
        ConfigValidationError: for an unknown provider name or a missing API key
    """
    builder = _PROVIDERS.get(_canonical(provider_cfg.name))
    if builder is None:
        raise ConfigValidationError(
            f"Unsupported provider: {provider_cfg.name}. Supported: {', '.join(available_providers())}"
        )
    api_key = get_api_key(provider_cfg)
    if not api_key:
        raise ConfigValidationError(
            f"No API key for provider {provider_cfg.name}: set provider.api_key or ${api_key_env_name(provider_cfg)}"
        )
    return builder(provider_cfg, api_key, log_cfg, llm_logger, transport=transport)
