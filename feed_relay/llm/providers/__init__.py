"""LLM provider implementations."""

from .base import CompletionOptions, TextProvider
from .factory import available_providers, create_provider
from .gemini import GeminiProvider
from .openai_compatible import OpenAICompatibleProvider

__all__ = [
    "CompletionOptions",
    "GeminiProvider",
    "OpenAICompatibleProvider",
    "TextProvider",
    "available_providers",
    "create_provider",
]
