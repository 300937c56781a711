"""Shared fixtures: temp database, controllable clock, stub AI service and sink."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable

import pytest

from feed_relay.core.types import RawItem
from feed_relay.errors import PublishError
from feed_relay.store.database import Database
from feed_relay.store.items import ItemRepository


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StubProvider:
    """Answers completions from a script.

    ``script`` is either a list consumed in order (an Exception entry is
    raised instead of returned) or a callable ``(prompt, model, options)``.
    """

    def __init__(self, script: list[Any] | Callable[..., str]):
        self.script = script
        self.calls: list[dict[str, Any]] = []

    def complete(self, prompt, model=None, options=None):
        self.calls.append({"prompt": prompt, "model": model, "label": options.label if options else None})
        if callable(self.script):
            answer = self.script(prompt, model, options)
        else:
            answer = self.script.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class RecordingSink:
    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    def publish(self, target, text):
        if self.fail:
            raise PublishError("sink down")
        self.sent.append((target, text))
        return f"msg-{len(self.sent)}"


def summary_json(importance: int = 10, category: str = "technology", headline: str = "Headline") -> str:
    return json.dumps(
        {
            "article_language": "en",
            "category": {"primary": category, "secondary": []},
            "content": {
                "headline": headline,
                "summary": "A short factual summary.",
                "keywords": ["ai", "chips"],
            },
            "importance": {"rating": importance},
            "deduplication": {
                "canonical_entities": ["Acme Corp"],
                "core_event": "Acme released a chip",
                "numeric_facts": ["3 nm"],
            },
        }
    )


def rss(entries: list[dict[str, str]], title: str = "Test feed") -> bytes:
    """Build a minimal RSS 2.0 document."""
    parts = []
    for entry in entries:
        fields = "".join(f"<{key}>{value}</{key}>" for key, value in entry.items())
        parts.append(f"<item>{fields}</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link><description>d</description>"
        f"{''.join(parts)}"
        "</channel></rss>"
    ).encode("utf-8")


def rss_items(count: int, prefix: str = "story") -> list[dict[str, str]]:
    return [
        {
            "title": f"{prefix} {idx}",
            "link": f"https://example.com/{prefix}/{idx}",
            "guid": f"{prefix}-{idx}",
            "description": f"Body of {prefix} {idx}",
        }
        for idx in range(1, count + 1)
    ]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "relay.db")
    yield database
    database.close()


@pytest.fixture
def store_item(db, clock):
    """Store a RawItem built from keyword fields and return its StoredItem."""
    items = ItemRepository(db)

    def _store(title: str, link: str, feed_id: int = 1, guid: str | None = None, summary: str = "Body"):
        item = RawItem.build(title=title, link=link, guid=guid, summary=summary)
        result = items.store(feed_id, item, now=clock())
        return items.get(result.id)

    return _store
