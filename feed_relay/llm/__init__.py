"""
LLM integration.

This package contains the provider backends, prompt loading, JSON answer
parsing, the retry/fallback helper and Langfuse tracing.
"""

from .json_parser import parse_json_object
from .prompts import build_dedup_prompt, build_summary_prompt, load_prompt
from .providers import CompletionOptions, TextProvider, available_providers, create_provider
from .retry import FallbackResult, complete_with_fallback, model_chain

__all__ = [
    "CompletionOptions",
    "FallbackResult",
    "TextProvider",
    "available_providers",
    "build_dedup_prompt",
    "build_summary_prompt",
    "complete_with_fallback",
    "create_provider",
    "load_prompt",
    "model_chain",
    "parse_json_object",
]
