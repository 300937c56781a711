"""Message formatting and delivery sinks."""

from .formatter import MessageFormatter
from .sinks import ConsoleSink, MessageSink, TelegramSink

__all__ = ["ConsoleSink", "MessageFormatter", "MessageSink", "TelegramSink"]
