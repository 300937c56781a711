"""
Exception hierarchy for Feed Relay.

Setup-time errors (config, prompts, store) abort a run. Everything raised
per feed or per item is caught by the stage that owns it and turned into a
structured outcome, so one bad feed or one bad model answer never stops a batch.
"""

from __future__ import annotations


class FeedRelayError(Exception):
    """Base class for all Feed Relay errors."""


class ConfigValidationError(FeedRelayError, ValueError):
    """Invalid configuration (bad feed URL, missing id, unknown keys...)."""


class TransportError(FeedRelayError):
    """The HTTP collaborator could not produce a response (DNS, TLS, timeout...)."""


class FeedParseError(FeedRelayError):
    """A 2xx body could not be parsed as RSS/Atom."""


class ProviderError(FeedRelayError):
    """The AI text service returned an API error or an unusable payload."""


class AIParsingError(FeedRelayError):
    """The AI text service answered, but the answer did not match the expected schema."""

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class PromptNotFoundError(FeedRelayError):
    """A prompt template file is missing or unreadable."""


class RepositorySaveError(FeedRelayError):
    """A single row could not be written to the store."""


class StoreUnavailableError(FeedRelayError):
    """The store cannot be opened; this aborts the run."""


class PublishError(FeedRelayError):
    """The messaging sink rejected or failed to deliver a message."""
