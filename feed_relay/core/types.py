"""
Core data types for Feed Relay.

This module defines the value types that flow through the pipeline:
- FeedConfig: validated, immutable description of one feed source
- RawItem: a normalized feed entry with its content hash
- StoredItem: a RawItem read back from the store with its row id
- AIAnalysis: summarization/categorization result for one item
- DedupDecision: semantic deduplication verdict for one item
- Publication: one reservation/publish record per dedup group
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urlparse

from ..errors import ConfigValidationError
from .identity import clean_text, content_hash


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_FEED_FIELDS = (
    "id",
    "url",
    "name",
    "enabled",
    "timeout",
    "retries",
    "polling_interval",
    "headers",
    "parser_options",
    "proxy",
)
_PROXY_SCHEMES = {"http", "https", "socks5", "socks5h"}


@dataclass(frozen=True)
class FeedConfig:
    """Configuration for polling one RSS/Atom feed.

    Instances are only valid when built through ``from_dict`` or the
    constructor, both of which validate; the object is frozen afterwards.

    Attributes:
        id: Unique positive feed identifier
        url: Feed URL (http or https only)
        name: Optional human-readable name
        enabled: If False the feed is never fetched
        timeout: HTTP timeout in seconds (> 0)
        retries: Transport-level retries after the first attempt
        polling_interval: Desired polling interval in seconds
        headers: Extra request headers, merged over the defaults
        parser_options: Parser settings (``max_items``)
        proxy: Optional proxy URL
    """

    id: int
    url: str
    name: str | None = None
    enabled: bool = True
    timeout: float = 30.0
    retries: int = 3
    polling_interval: int = 300
    headers: Mapping[str, str] = field(default_factory=dict)
    parser_options: Mapping[str, Any] = field(default_factory=dict)
    proxy: str | None = None

    def __post_init__(self) -> None:
        _validate_feed(self)
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        object.__setattr__(self, "parser_options", MappingProxyType(dict(self.parser_options)))

    @property
    def label(self) -> str:
        return self.name or f"feed-{self.id}"

    @property
    def max_items(self) -> int | None:
        value = self.parser_options.get("max_items")
        return int(value) if value else None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeedConfig:
        """Build a FeedConfig from a raw mapping (YAML/JSON).

        Raises:
            ConfigValidationError: on missing/unknown keys or invalid values
        """
        if not isinstance(data, Mapping):
            raise ConfigValidationError(f"Feed entry must be a mapping, got {type(data).__name__}")
        unknown = sorted(set(data) - set(_FEED_FIELDS))
        if unknown:
            raise ConfigValidationError(f"Unknown feed option(s): {', '.join(unknown)}")
        if data.get("id") is None:
            raise ConfigValidationError("Feed option 'id' is required")
        if not data.get("url"):
            raise ConfigValidationError("Feed option 'url' is required and must not be empty")
        try:
            return cls(
                id=_as_int(data["id"], "id"),
                url=str(data["url"]).strip(),
                name=str(data["name"]) if data.get("name") is not None else None,
                enabled=_as_bool(data.get("enabled", True), "enabled"),
                timeout=float(data.get("timeout", 30.0)),
                retries=_as_int(data.get("retries", 3), "retries"),
                polling_interval=_as_int(data.get("polling_interval", 300), "polling_interval"),
                headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
                parser_options=dict(data.get("parser_options") or {}),
                proxy=str(data["proxy"]) if data.get("proxy") else None,
            )
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigValidationError):
                raise
            raise ConfigValidationError(f"Invalid feed {data.get('id')!r}: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "name": self.name,
            "enabled": self.enabled,
            "timeout": self.timeout,
            "retries": self.retries,
            "polling_interval": self.polling_interval,
            "headers": dict(self.headers),
            "parser_options": dict(self.parser_options),
            "proxy": self.proxy,
        }


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigValidationError(f"Feed option '{name}' must be an integer")
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"Feed option '{name}' must be an integer: {value!r}") from exc
    if isinstance(value, float) and value != result:
        raise ConfigValidationError(f"Feed option '{name}' must be an integer: {value!r}")
    return result


def _as_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigValidationError(f"Feed option '{name}' must be true or false: {value!r}")
    return value


def _validate_feed(cfg: FeedConfig) -> None:
    if isinstance(cfg.id, bool) or not isinstance(cfg.id, int) or cfg.id <= 0:
        raise ConfigValidationError(f"Feed id must be a positive integer: {cfg.id!r}")
    parsed = urlparse(cfg.url or "")
    if parsed.scheme not in ("http", "https"):
        raise ConfigValidationError(f"Feed {cfg.id}: URL must use http or https: {cfg.url!r}")
    if not parsed.netloc:
        raise ConfigValidationError(f"Feed {cfg.id}: malformed URL: {cfg.url!r}")
    if cfg.timeout <= 0:
        raise ConfigValidationError(f"Feed {cfg.id}: timeout must be > 0")
    if cfg.retries < 0:
        raise ConfigValidationError(f"Feed {cfg.id}: retries must be >= 0")
    if cfg.polling_interval <= 0:
        raise ConfigValidationError(f"Feed {cfg.id}: polling_interval must be > 0")
    max_items = cfg.parser_options.get("max_items")
    if max_items is not None and (isinstance(max_items, bool) or not isinstance(max_items, int) or max_items <= 0):
        raise ConfigValidationError(f"Feed {cfg.id}: parser_options.max_items must be a positive integer")
    if cfg.proxy is not None:
        proxy = urlparse(cfg.proxy)
        if proxy.scheme not in _PROXY_SCHEMES or not proxy.netloc:
            raise ConfigValidationError(f"Feed {cfg.id}: invalid proxy URL: {cfg.proxy!r}")


@dataclass(frozen=True)
class Enclosure:
    """A media attachment (podcast audio, image...)."""

    url: str
    mime: str = "application/octet-stream"
    length: int = 0


@dataclass(frozen=True)
class RawItem:
    """A normalized feed entry, before any AI processing.

    Use ``RawItem.build`` to construct one: it cleans the text fields and
    derives ``content_hash``.
    """

    title: str
    link: str
    guid: str | None
    summary: str
    content: str
    authors: tuple[str, ...]
    categories: frozenset[str]
    enclosure: Enclosure | None
    published_at: datetime | None
    content_hash: str

    @classmethod
    def build(
        cls,
        *,
        title: str | None,
        link: str | None,
        guid: str | None = None,
        summary: str | None = None,
        content: str | None = None,
        authors: list[str] | tuple[str, ...] = (),
        categories: set[str] | frozenset[str] | list[str] = frozenset(),
        enclosure: Enclosure | None = None,
        published_at: datetime | None = None,
    ) -> RawItem:
        """Normalize the fields and compute the content hash.

        Raises:
            ValueError: if the entry has neither title+link nor guid
        """
        clean_title = clean_text(title)
        clean_link = (link or "").strip()
        clean_guid = (guid or "").strip() or None
        return cls(
            title=clean_title,
            link=clean_link,
            guid=clean_guid,
            summary=clean_text(summary),
            content=clean_text(content),
            authors=tuple(a for a in (clean_text(x) for x in authors) if a),
            categories=frozenset(c for c in (clean_text(x) for x in categories) if c),
            enclosure=enclosure,
            published_at=published_at,
            content_hash=content_hash(clean_title, clean_link, clean_guid),
        )

    @property
    def is_valid(self) -> bool:
        return bool((self.title and self.link) or self.guid)

    @property
    def text(self) -> str:
        """Best available body text: full content, else summary."""
        return self.content or self.summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "link": self.link,
            "guid": self.guid,
            "summary": self.summary,
            "content": self.content,
            "authors": list(self.authors),
            "categories": sorted(self.categories),
            "enclosure": (
                {"url": self.enclosure.url, "mime": self.enclosure.mime, "length": self.enclosure.length}
                if self.enclosure
                else None
            ),
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "content_hash": self.content_hash,
        }


@dataclass(frozen=True)
class StoredItem:
    """A RawItem as persisted, with its row id and owning feed."""

    id: int
    feed_id: int
    item: RawItem
    created_at: datetime


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class AIAnalysis:
    """Summarization result for one item.

    Attributes:
        item_id: The analysed item
        status: pending while claimed, then success or failed (terminal)
        language: ISO language code reported by the model
        importance: Importance score within the configured bounds
        category: Primary category
        headline: Short rewritten headline
        summary: Free-text summary
        keywords: Topical keywords
        entities: Canonical named entities, used by semantic dedup
        core_event: One-line description of the reported event
        numeric_facts: Numbers quoted in the article
        model_used: Model that produced the accepted answer
        attempts: Number of model calls made
        error: Last error message when status is failed
        processed_at: When the row reached a terminal status
    """

    item_id: int
    status: AnalysisStatus = AnalysisStatus.PENDING
    language: str | None = None
    importance: int | None = None
    category: str | None = None
    headline: str | None = None
    summary: str | None = None
    keywords: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    core_event: str | None = None
    numeric_facts: list[str] = field(default_factory=list)
    model_used: str | None = None
    attempts: int = 0
    error: str | None = None
    processed_at: datetime | None = None

    @property
    def is_success(self) -> bool:
        return self.status == AnalysisStatus.SUCCESS


class DecisionStatus(str, Enum):
    CHECKED = "checked"
    FAILED = "failed"


@dataclass
class DedupDecision:
    """Semantic deduplication verdict for one item."""

    item_id: int
    similarity: float
    can_be_published: bool
    reason: str
    dedup_group_key: str
    status: DecisionStatus = DecisionStatus.CHECKED
    duplicate_of_item_id: int | None = None
    compared_item_ids: list[int] = field(default_factory=list)
    model_used: str | None = None
    checked_at: datetime | None = None


@dataclass(frozen=True)
class WindowEntry:
    """A previously evaluated item that new items are compared against."""

    item_id: int
    content_hash: str
    dedup_group_key: str
    headline: str
    summary: str
    entities: tuple[str, ...] = ()
    core_event: str | None = None
    numeric_facts: tuple[str, ...] = ()
    published_at: datetime | None = None


class PublicationStatus(str, Enum):
    RESERVED = "reserved"
    SENDING = "sending"
    PUBLISHED = "published"


@dataclass
class Publication:
    """Reservation/publish record for one dedup group."""

    dedup_group_key: str
    item_id: int
    status: PublicationStatus
    target: str
    reserved_at: datetime
    message_id: str | None = None
    published_at: datetime | None = None
