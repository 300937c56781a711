"""
Messaging sinks.

A sink delivers one formatted message to a destination and returns the
message id assigned by the destination.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import itertools
from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from ..errors import ConfigValidationError, PublishError


class MessageSink(ABC):
    name = "sink"

    @abstractmethod
    def publish(self, target: str, text: str) -> str:
        """Deliver ``text`` to ``target`` and return the message id.

        Raises:
            PublishError: if the message was not delivered
        """
        raise NotImplementedError


class TelegramSink(MessageSink):
    """Sends HTML messages through the Telegram Bot API."""

    name = "telegram"

    def __init__(
        self,
        bot_token: str | None,
        api_base: str = "https://api.telegram.org",
        timeout: float = 20.0,
        disable_web_page_preview: bool = False,
        trust_env: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        if not bot_token:
            raise ConfigValidationError("Missing Telegram bot token: set publish.bot_token or $TELEGRAM_BOT_TOKEN")
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.disable_web_page_preview = disable_web_page_preview
        self.trust_env = trust_env
        self._transport = transport

    def publish(self, target: str, text: str) -> str:
        payload = {
            "chat_id": target,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": self.disable_web_page_preview,
        }
        data = self._call("sendMessage", payload)
        try:
            return str(data["result"]["message_id"])
        except (KeyError, TypeError) as exc:
            raise PublishError("Telegram response has no message_id") from exc

    def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        kwargs: dict[str, Any] = {"timeout": self.timeout, "trust_env": self.trust_env}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            with httpx.Client(**kwargs) as client:
                resp = client.post(url, json=payload)
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PublishError(f"Telegram {method} failed: {type(exc).__name__}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            raise PublishError(f"Telegram {method} rejected (HTTP {resp.status_code}): {description or 'unknown error'}")
        return data


class ConsoleSink(MessageSink):
    """Prints messages to the terminal; used for dry runs."""

    name = "console"

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._ids = itertools.count(1)

    def publish(self, target: str, text: str) -> str:
        message_id = f"console-{next(self._ids)}"
        self.console.print(Panel(Text(text), title=f"{target or 'console'} #{message_id}", expand=False))
        return message_id
