"""
RSS/Atom parsing on top of feedparser.

Turns a response body into normalized RawItem objects. Entries without an
identity (title + link, or guid) are dropped and counted, never raised.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

import feedparser

from ..core.types import Enclosure, RawItem
from ..errors import FeedParseError

logger = logging.getLogger(__name__)


@dataclass
class ParsedFeed:
    """Parser output for one body.

    Attributes:
        items: Valid entries, in document order
        dropped: Entries skipped for lack of an identity
        title: Channel title, when present
    """

    items: list[RawItem] = field(default_factory=list)
    dropped: int = 0
    title: str | None = None


class FeedParser:
    """Parses RSS 0.9x/1.0/2.0 and Atom bodies into RawItem lists."""

    def parse(self, body: bytes, max_items: int | None = None) -> ParsedFeed:
        """Parse a feed body.

        Raises:
            FeedParseError: if the body is not a recognizable feed
        """
        if not body or not body.strip():
            raise FeedParseError("Empty feed body")
        parsed = feedparser.parse(body)
        entries = list(parsed.get("entries") or [])
        if not parsed.get("version") and not entries:
            reason = parsed.get("bozo_exception") or "unrecognized format"
            raise FeedParseError(f"Not an RSS/Atom document: {reason}")

        if max_items:
            entries = entries[:max_items]

        result = ParsedFeed(title=(parsed.get("feed") or {}).get("title"))
        for entry in entries:
            try:
                item = entry_to_item(entry)
            except ValueError:
                result.dropped += 1
                continue
            result.items.append(item)
        if result.dropped:
            logger.debug("Dropped %d entries without identity", result.dropped)
        return result


def entry_to_item(entry: dict[str, Any]) -> RawItem:
    """Build a RawItem from one feedparser entry.

    Raises:
        ValueError: if the entry has neither title+link nor guid
    """
    content_blocks = entry.get("content") or []
    content = " ".join(block.get("value", "") for block in content_blocks if block.get("value"))
    return RawItem.build(
        title=entry.get("title"),
        link=entry.get("link"),
        guid=entry.get("id") or entry.get("guid"),
        summary=entry.get("summary") or entry.get("description"),
        content=content,
        authors=_authors(entry),
        categories=[tag.get("term") for tag in entry.get("tags") or [] if tag.get("term")],
        enclosure=_enclosure(entry),
        published_at=_published(entry),
    )


def _authors(entry: dict[str, Any]) -> list[str]:
    names = [a.get("name") for a in entry.get("authors") or [] if a.get("name")]
    if not names and entry.get("author"):
        names = [entry["author"]]
    return names


def _enclosure(entry: dict[str, Any]) -> Enclosure | None:
    for enc in entry.get("enclosures") or []:
        href = enc.get("href") or enc.get("url")
        if not href:
            continue
        try:
            length = int(enc.get("length") or 0)
        except (TypeError, ValueError):
            length = 0
        return Enclosure(url=href, mime=enc.get("type") or "application/octet-stream", length=length)
    return None


def _published(entry: dict[str, Any]) -> datetime | None:
    struct = entry.get("published_parsed") or entry.get("updated_parsed")
    if not struct:
        return None
    return datetime.fromtimestamp(calendar.timegm(struct), timezone.utc)
