"""Prompt loading and rendering helpers for LLM calls."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Sequence

from ..core.types import AIAnalysis, StoredItem, WindowEntry
from ..errors import PromptNotFoundError


_PROMPT_DIR = Path(__file__).resolve().parent.parent / "prompts"


def load_prompt(name: str, override_path: str | None = None) -> str:
    """Return a system prompt, from ``override_path`` or the packaged ``<name>.md``.

    Raises:
        PromptNotFoundError: if the file is missing, unreadable or empty
    """
    path = Path(override_path) if override_path else _PROMPT_DIR / f"{name}.md"
    return _load_template(str(path))


@lru_cache(maxsize=None)
def _load_template(path: str) -> str:
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise PromptNotFoundError(f"Prompt file not readable: {path}") from exc
    if not text:
        raise PromptNotFoundError(f"Prompt file is empty: {path}")
    return text


def build_summary_prompt(stored: StoredItem, max_chars: int) -> str:
    item = stored.item
    categories = ", ".join(sorted(item.categories)) or "(none)"
    text = item.text[:max_chars] or "(no body text)"
    return (
        f"Title: {item.title or '(untitled)'}\n"
        f"Link: {item.link or '(none)'}\n"
        f"Categories: {categories}\n"
        f"Text:\n{text}"
    )


def build_dedup_prompt(
    analysis: AIAnalysis,
    stored: StoredItem,
    candidates: Sequence[WindowEntry],
) -> str:
    new_block = "\n".join(
        [
            f"ID: {analysis.item_id}",
            f"Headline: {analysis.headline or stored.item.title}",
            f"Summary: {analysis.summary or ''}",
            f"Entities: {_join(analysis.entities)}",
            f"Core event: {analysis.core_event or '(none)'}",
            f"Numeric facts: {_join(analysis.numeric_facts)}",
        ]
    )
    existing = []
    for entry in candidates:
        existing.append(
            "\n".join(
                [
                    f"ID: {entry.item_id}",
                    f"Headline: {entry.headline}",
                    f"Summary: {entry.summary}",
                    f"Entities: {_join(entry.entities)}",
                    f"Core event: {entry.core_event or '(none)'}",
                    f"Numeric facts: {_join(entry.numeric_facts)}",
                ]
            )
        )
    existing_block = "\n\n".join(existing) or "(none)"
    return f"NEW ARTICLE:\n{new_block}\n\nEXISTING ARTICLES:\n{existing_block}"


def _join(values: Sequence[str]) -> str:
    return ", ".join(values) if values else "(none)"
