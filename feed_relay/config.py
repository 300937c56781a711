"""
Typed settings for Feed Relay, loaded from one YAML file.

Every section is a dataclass with working defaults; the YAML only needs
to name what differs. Sections:
- FetchConfig: feed polling transport settings
- BackoffConfig: exponential backoff for failing feeds
- StoreConfig: SQLite database location
- ProviderConfig: AI text service backend and credentials
- SummaryConfig: AI summarization settings
- DedupConfig: semantic deduplication settings
- PublishConfig: publication gate and Telegram sink settings
- LoggingConfig: console, file and LLM interaction logs
- LangfuseConfig: optional Langfuse spans
- AppConfig: Root configuration container, plus the validated feed list
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
import os
from typing import Any

import yaml

from .core.state import BackoffPolicy
from .core.types import FeedConfig
from .errors import ConfigValidationError


@dataclass
class FetchConfig:
    """Configuration for feed polling.

    Attributes:
        max_workers: Number of feeds fetched concurrently
        user_agent: Default User-Agent header (feed headers override it)
        accept: Default Accept header
        trust_env: Whether to respect system proxy settings
        follow_redirects: Whether the transport follows 3xx redirects
    """

    max_workers: int = 4
    user_agent: str = "feed-relay/0.1 (+https://github.com/feed-relay)"
    accept: str = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"
    trust_env: bool = True
    follow_redirects: bool = True


@dataclass
class BackoffConfig:
    """Exponential backoff applied after consecutive fetch failures.

    Attributes:
        base_seconds: Delay after the first failure
        multiplier: Growth factor per consecutive failure
        max_seconds: Upper bound for a single delay
    """

    base_seconds: float = 60.0
    multiplier: float = 2.0
    max_seconds: float = 3600.0

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_seconds=self.base_seconds,
            multiplier=self.multiplier,
            max_seconds=self.max_seconds,
        )


@dataclass
class StoreConfig:
    """Configuration for the SQLite store.

    Attributes:
        path: Database file path
    """

    path: str = "feed_relay.db"


@dataclass
class ProviderConfig:
    """AI text service backend.

    Attributes:
        name: Provider name ("gemini" or "openai_compatible")
        model: Primary model identifier
        api_key_env: Environment variable holding the API key (defaults per provider)
        base_url: Base URL for the provider API (defaults per provider)
        api_key: Optional inline API key (overrides env var)
        trust_env: Whether to respect system proxy settings for API requests
        timeout_seconds: Timeout for a single completion request
        temperature: Sampling temperature
        max_output_tokens: Upper bound on completion length
    """

    name: str = "gemini"
    model: str = "gemini-3-flash-preview"
    api_key_env: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    trust_env: bool = True
    timeout_seconds: float = 60.0
    temperature: float = 0.2
    max_output_tokens: int = 2048


@dataclass
class SummaryConfig:
    """Configuration for AI summarization.

    Attributes:
        prompt_file: Custom system prompt template (defaults to the packaged one)
        max_chars: Maximum characters of item text sent to the model
        fallback_models: Models tried in order after the primary model fails
        retry_count: Extra attempts per model
        retry_delay_seconds: Base delay between attempts (doubles each retry, capped)
        importance_min: Lower bound for the importance score
        importance_max: Upper bound for the importance score
        max_workers: Items summarized concurrently
        batch_limit: Maximum unanalyzed items picked per run
        stale_pending_minutes: Age after which an abandoned pending row is released
    """

    prompt_file: str | None = None
    max_chars: int = 12000
    fallback_models: list[str] = field(default_factory=list)
    retry_count: int = 2
    retry_delay_seconds: float = 0.5
    importance_min: int = 1
    importance_max: int = 20
    max_workers: int = 4
    batch_limit: int = 100
    stale_pending_minutes: int = 30


@dataclass
class DedupConfig:
    """Configuration for semantic deduplication.

    Attributes:
        enabled: Whether to run AI comparison (disabled means every item is publishable)
        prompt_file: Custom comparison prompt template
        similarity_threshold: Score (0-100) at or above which an item is a duplicate
        window_hours: How far back the comparison window reaches
        window_size: Maximum rows loaded into the window
        max_comparisons: Maximum window entries sent to the model
        fallback_models: Models tried in order after the primary model fails
        retry_count: Extra attempts per model
        retry_delay_seconds: Base delay between attempts
    """

    enabled: bool = True
    prompt_file: str | None = None
    similarity_threshold: float = 80.0
    window_hours: int = 48
    window_size: int = 200
    max_comparisons: int = 10
    fallback_models: list[str] = field(default_factory=list)
    retry_count: int = 2
    retry_delay_seconds: float = 0.5


@dataclass
class PublishRule:
    """Routes matching items to one destination.

    Attributes:
        target: Destination (Telegram chat id or @channel)
        feed_ids: Feeds the rule applies to (empty means every feed)
        min_importance: Items below this importance do not match
        categories: Accepted categories; empty or "all" accepts any
        languages: Accepted article languages; empty accepts any
        priority: Higher priority rules are tried first
        enabled: Disabled rules never match
    """

    target: str
    feed_ids: list[int] = field(default_factory=list)
    min_importance: int | None = None
    categories: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    priority: int = 0
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> PublishRule:
        if not isinstance(data, dict):
            raise ConfigValidationError(f"Publication rule must be a mapping, got {type(data).__name__}")
        unknown = sorted(set(data) - {f.name for f in fields(cls)})
        if unknown:
            raise ConfigValidationError(f"Unknown publication rule option(s): {', '.join(unknown)}")
        if not data.get("target"):
            raise ConfigValidationError("Publication rule needs a 'target'")
        for name in ("feed_ids", "categories", "languages"):
            if not isinstance(data.get(name, []), list):
                raise ConfigValidationError(f"Publication rule option '{name}' must be a list")
        if not isinstance(data.get("enabled", True), bool):
            raise ConfigValidationError("Publication rule option 'enabled' must be true or false")
        return cls(**data)

    def matches(self, feed_id: int, importance: int | None, category: str | None, language: str | None) -> bool:
        if not self.enabled:
            return False
        if self.feed_ids and feed_id not in self.feed_ids:
            return False
        if self.min_importance is not None and (importance or 0) < self.min_importance:
            return False
        wanted = {c.lower() for c in self.categories}
        if wanted and "all" not in wanted and (category or "").lower() not in wanted:
            return False
        if self.languages and (language or "").lower() not in {lang.lower() for lang in self.languages}:
            return False
        return True


@dataclass
class PublishConfig:
    """Configuration for the publication gate and messaging sink.

    Attributes:
        enabled: Whether to publish at all
        sink: "telegram" or "console"
        target: Destination (Telegram chat id or @channel)
        bot_token_env: Environment variable name containing the bot token
        bot_token: Optional inline bot token (overrides env var)
        api_base: Telegram Bot API base URL
        timeout_seconds: Timeout for a single send request
        min_importance: Items below this importance are filtered out
        categories: If set, only these categories are published
        languages: If set, only articles in these languages are published
        rules: Per-feed routing rules; when set, the highest-priority match picks the target
        template_file: Custom Jinja2 message template
        disable_web_page_preview: Passed through to Telegram
        retention_days: Published reservations older than this are purged
        stale_reservation_minutes: Age after which a reservation that never reached the sink is released
    """

    enabled: bool = True
    sink: str = "telegram"
    target: str = ""
    bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    bot_token: str | None = None
    api_base: str = "https://api.telegram.org"
    timeout_seconds: float = 20.0
    min_importance: int = 1
    categories: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    rules: list[PublishRule] = field(default_factory=list)
    template_file: str | None = None
    disable_web_page_preview: bool = False
    retention_days: int = 30
    stale_reservation_minutes: int = 30

    def __post_init__(self):
        if not isinstance(self.rules, list):
            raise ConfigValidationError("'publish.rules' must be a list of rule mappings")
        self.rules = [r if isinstance(r, PublishRule) else PublishRule.from_dict(r) for r in self.rules]

    def ordered_rules(self) -> list[PublishRule]:
        return sorted(self.rules, key=lambda r: -r.priority)


@dataclass
class LoggingConfig:
    """Where and how the run logs.

    Attributes:
        level: Logging level ("DEBUG", "INFO", "WARNING", "ERROR")
        console: Whether to log to console
        file: Whether to log to file
        format: Log file format ("jsonl" or "plain")
        directory: Directory for log files
        filename: Name of the main log file
        llm_log_enabled: Whether to enable separate LLM interaction logging
        llm_log_detail: LLM log detail level ("response_only", "prompt_response")
        llm_log_redaction: Redaction mode for LLM logs ("none", "redact_content", "redact_urls_authors")
        llm_log_file: Name of the LLM log file
    """

    level: str = "INFO"
    console: bool = True
    file: bool = True
    format: str = "jsonl"
    directory: str = "logs"
    filename: str = "run.jsonl"
    llm_log_enabled: bool = True
    llm_log_detail: str = "response_only"
    llm_log_redaction: str = "redact_urls_authors"
    llm_log_file: str = "llm.jsonl"


@dataclass
class LangfuseConfig:
    """Optional Langfuse tracing of AI calls and pipeline stages.

    Attributes:
        enabled: Whether to enable Langfuse tracing
        public_key: Langfuse public key (optional, falls back to env)
        secret_key: Langfuse secret key (optional, falls back to env)
        host: Langfuse host URL (optional, falls back to env)
        environment: Langfuse environment label (optional)
        release: Langfuse release identifier (optional)
        timeout_seconds: Langfuse API timeout
        redaction: Redaction mode for prompt/response payloads
        max_text_chars: Maximum characters for prompt/response payloads
    """

    enabled: bool = False
    public_key: str | None = None
    secret_key: str | None = None
    host: str | None = None
    environment: str | None = None
    release: str | None = None
    timeout_seconds: int = 20
    redaction: str = "redact_urls_authors"
    max_text_chars: int = 20000


_SECTIONS: dict[str, type] = {
    "fetch": FetchConfig,
    "backoff": BackoffConfig,
    "store": StoreConfig,
    "provider": ProviderConfig,
    "summary": SummaryConfig,
    "dedup": DedupConfig,
    "publish": PublishConfig,
    "logging": LoggingConfig,
    "langfuse": LangfuseConfig,
}


@dataclass
class AppConfig:
    """All sections plus the feeds that passed validation."""

    fetch: FetchConfig = field(default_factory=FetchConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    langfuse: LangfuseConfig = field(default_factory=LangfuseConfig)
    feeds: list[FeedConfig] = field(default_factory=list)
    feed_errors: list[str] = field(default_factory=list)


@dataclass
class FeedLoadResult:
    """Valid feeds plus one message per rejected entry."""

    feeds: list[FeedConfig]
    errors: list[str]


def load_config(path: str | None, strict_feeds: bool = False) -> AppConfig:
    """Load configuration from a YAML file with defaults.

    Raises:
        ConfigValidationError: on malformed YAML, unknown sections or keys,
            out-of-range values, or on any invalid feed when ``strict_feeds``
            is set
    """
    if not path:
        return AppConfig()

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigValidationError(f"Config root must be a mapping: {path}")
    return _merge_config(AppConfig(), raw, strict_feeds=strict_feeds)


def load_feeds(entries: Any, strict: bool = False) -> FeedLoadResult:
    """Validate a raw ``feeds:`` list.

    Invalid entries and duplicate ids are reported in ``errors`` while the
    valid feeds proceed. With ``strict`` the first problem raises instead.
    """
    if entries is None:
        return FeedLoadResult(feeds=[], errors=[])
    if not isinstance(entries, list):
        raise ConfigValidationError("'feeds' must be a list of feed mappings")

    feeds: list[FeedConfig] = []
    errors: list[str] = []
    seen: set[int] = set()
    for idx, entry in enumerate(entries):
        try:
            feed = FeedConfig.from_dict(entry)
            if feed.id in seen:
                raise ConfigValidationError(f"Duplicate feed id: {feed.id}")
        except ConfigValidationError as exc:
            if strict:
                raise
            errors.append(f"feeds[{idx}]: {exc}")
            continue
        seen.add(feed.id)
        feeds.append(feed)
    return FeedLoadResult(feeds=feeds, errors=errors)


def _merge_config(base: AppConfig, raw: dict[str, Any], strict_feeds: bool = False) -> AppConfig:
    """Overlay YAML sections onto the defaults, rejecting unknown keys."""
    data = _asdict(base)
    for key, value in raw.items():
        if key == "feeds":
            continue
        if key not in data:
            raise ConfigValidationError(
                f"Unknown config section '{key}'. Known: {', '.join([*_SECTIONS, 'feeds'])}"
            )
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ConfigValidationError(f"Config section '{key}' must be a mapping")
        unknown = sorted(set(value) - set(data[key]))
        if unknown:
            raise ConfigValidationError(f"Unknown key(s) in '{key}': {', '.join(unknown)}")
        data[key].update(value)
    cfg = _fromdict(data)
    _validate_sections(cfg)
    result = load_feeds(raw.get("feeds"), strict=strict_feeds)
    cfg.feeds = result.feeds
    cfg.feed_errors = result.errors
    return cfg


def _validate_sections(cfg: AppConfig) -> None:
    try:
        _check_ranges(cfg)
    except TypeError as exc:
        raise ConfigValidationError(f"Invalid numeric setting: {exc}") from exc


def _check_ranges(cfg: AppConfig) -> None:
    backoff = cfg.backoff
    if backoff.base_seconds <= 0:
        raise ConfigValidationError("backoff.base_seconds must be > 0")
    if backoff.multiplier < 1:
        raise ConfigValidationError("backoff.multiplier must be >= 1")
    if backoff.max_seconds < backoff.base_seconds:
        raise ConfigValidationError("backoff.max_seconds must be >= backoff.base_seconds")
    if not 0 <= cfg.dedup.similarity_threshold <= 100:
        raise ConfigValidationError("dedup.similarity_threshold must be between 0 and 100")
    if cfg.summary.importance_min > cfg.summary.importance_max:
        raise ConfigValidationError("summary.importance_min must be <= summary.importance_max")


def _asdict(cfg: AppConfig) -> dict[str, Any]:
    """Convert the AppConfig sections to a nested dictionary."""
    return {name: asdict(getattr(cfg, name)) for name in _SECTIONS}


def _fromdict(data: dict[str, Any]) -> AppConfig:
    sections = {}
    for name, section_cls in _SECTIONS.items():
        allowed = {f.name for f in fields(section_cls)}
        sections[name] = section_cls(**{k: v for k, v in data[name].items() if k in allowed})
    return AppConfig(**sections)


_DEFAULT_KEY_ENV = {
    "gemini": "GOOGLE_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openai_compatible": "OPENAI_API_KEY",
}


def api_key_env_name(cfg: ProviderConfig) -> str:
    """Environment variable consulted for the provider API key."""
    if cfg.api_key_env:
        return cfg.api_key_env
    return _DEFAULT_KEY_ENV.get(cfg.name.strip().lower().replace("-", "_"), "OPENAI_API_KEY")


def get_api_key(cfg: ProviderConfig) -> str | None:
    """Inline key first, then the environment."""
    if cfg.api_key:
        return cfg.api_key
    return os.getenv(api_key_env_name(cfg))


def get_bot_token(cfg: PublishConfig) -> str | None:
    """Get the Telegram bot token from inline config or environment variable."""
    if cfg.bot_token:
        return cfg.bot_token
    return os.getenv(cfg.bot_token_env)
