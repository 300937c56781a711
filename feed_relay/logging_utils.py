"""
Logging setup for Feed Relay.

Two loggers are configured per run:
- ``feed_relay``: operational events (rich console and/or a JSONL file)
- ``feed_relay.llm``: raw model exchanges, written to a separate JSONL file

Events carry structured fields through ``extra`` (see ``log_event``). Every
handler masks credentials that httpx error messages can carry, such as the
Gemini ``?key=`` query parameter or a Telegram ``/bot<token>/`` path.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
import re
from typing import Any

from rich.logging import RichHandler

from .config import LoggingConfig

_URL_RE = re.compile(r"https?://\S+")
_SECRET_PATTERNS = (
    (re.compile(r"(/bot)\d+:[A-Za-z0-9_-]+"), r"\1[REDACTED]"),
    (re.compile(r"([?&](?:key|api_key|access_token|token)=)[^&\s'\"]+"), r"\1[REDACTED]"),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"), r"\1[REDACTED]"),
)
# LogRecord attributes that are not event fields.
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def mask_secrets(text: str) -> str:
    """Replace bot tokens, API key query parameters and bearer tokens."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretMaskingFilter(logging.Filter):
    """Rewrites the rendered message of every record with ``mask_secrets``."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class JsonlFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_event_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return mask_secrets(json.dumps(payload, ensure_ascii=True, default=str))


def setup_logging(cfg: LoggingConfig, log_dir: Path | None) -> logging.Logger:
    """Configure the ``feed_relay`` logger from scratch and return it."""
    logger = _reset("feed_relay", cfg.level)
    if cfg.console:
        console = RichHandler(rich_tracebacks=True, show_time=False, show_level=True)
        _attach(logger, console, cfg.level, logging.Formatter("%(message)s"))
    if cfg.file and log_dir is not None:
        formatter = JsonlFormatter() if cfg.format == "jsonl" else logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        _attach(logger, _file_handler(log_dir, cfg.filename), cfg.level, formatter)
    return logger


def setup_llm_logger(cfg: LoggingConfig, log_dir: Path | None) -> logging.Logger | None:
    """Configure the model exchange log, or return None when it is off."""
    if not cfg.llm_log_enabled or log_dir is None:
        return None
    logger = _reset("feed_relay.llm", cfg.level)
    _attach(logger, _file_handler(log_dir, cfg.llm_log_file), cfg.level, JsonlFormatter())
    return logger


def log_event(
    logger: logging.Logger | None,
    message: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Log ``message`` with ``fields`` attached as structured event data.

    Field names must not collide with LogRecord attributes (``name``,
    ``module``, ``filename``...).
    """
    if logger is None:
        return
    logger.log(level, message, extra=fields)


def redact_text(text: str, mode: str) -> str:
    """Apply an LLM log redaction mode to free text."""
    if mode == "redact_content":
        return ""
    if mode == "redact_urls_authors":
        return _URL_RE.sub("[REDACTED_URL]", text)
    return text


def redact_value(value: str | None, mode: str) -> str | None:
    if value is None:
        return None
    if mode == "redact_urls_authors":
        return "[REDACTED]"
    if mode == "redact_content":
        return None
    return value


def truncate_text(text: str, max_chars: int = 20000) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "...(truncated)"


def _reset(name: str, level: str) -> logging.Logger:
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(_level(level))
    logger.propagate = False
    return logger


def _attach(logger: logging.Logger, handler: logging.Handler, level: str, formatter: logging.Formatter) -> None:
    handler.setLevel(_level(level))
    handler.setFormatter(formatter)
    handler.addFilter(SecretMaskingFilter())
    logger.addHandler(handler)


def _file_handler(log_dir: Path, filename: str) -> logging.FileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(log_dir / filename, encoding="utf-8")


def _event_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key, value in record.__dict__.items() if key not in _RESERVED}


def _level(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)
