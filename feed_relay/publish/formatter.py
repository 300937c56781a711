"""Message rendering with Jinja2."""

from __future__ import annotations

from pathlib import Path
import re

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..core.types import AIAnalysis, StoredItem

TELEGRAM_MAX_CHARS = 4096

_HASHTAG_RE = re.compile(r"\W+", re.UNICODE)


def _hashtag(value: str) -> str:
    return _HASHTAG_RE.sub("_", value.strip()).strip("_")


class MessageFormatter:
    """Renders one item into the HTML message sent to the sink."""

    def __init__(self, template_file: str | None = None, highlight_importance: int = 15):
        if template_file:
            path = Path(template_file)
            directory, name = str(path.parent), path.name
        else:
            directory, name = str(Path(__file__).resolve().parent.parent / "templates"), "message.html.j2"
        env = Environment(
            loader=FileSystemLoader(directory),
            autoescape=select_autoescape(["html", "html.j2"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.filters["hashtag"] = _hashtag
        self.template = env.get_template(name)
        self.highlight_importance = highlight_importance

    def render(self, stored: StoredItem, analysis: AIAnalysis, source: str | None = None) -> str:
        summary = analysis.summary or stored.item.summary
        text = self._render(stored, analysis, summary, source)
        overflow = len(text) - TELEGRAM_MAX_CHARS
        if overflow > 0 and summary:
            summary = summary[: max(0, len(summary) - overflow - 1)].rstrip() + "…"
            text = self._render(stored, analysis, summary, source)
        return text.strip()

    def _render(self, stored: StoredItem, analysis: AIAnalysis, summary: str, source: str | None) -> str:
        return self.template.render(
            headline=analysis.headline or stored.item.title,
            summary=summary,
            keywords=[k for k in (_hashtag(k) for k in analysis.keywords) if k][:5],
            link=stored.item.link,
            source=source,
            category=analysis.category,
            importance=analysis.importance,
            highlight_importance=self.highlight_importance,
        )
