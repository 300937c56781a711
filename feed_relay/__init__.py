"""
Feed Relay - RSS/Atom to Telegram relay with AI summaries and dedup.

This package polls RSS/Atom feeds with conditional GET and backoff, stores
new entries once per content hash, summarizes them with an LLM, holds back
semantic duplicates and publishes the rest to a Telegram channel.

Main entry point is the CLI via `feed-relay run` command.

Example:
    $ feed-relay run -c config.yaml
"""

__all__ = ["__version__", "FeedConfig", "FeedState", "run_pipeline"]
__version__ = "0.1.0"

from .core.state import FeedState
from .core.types import FeedConfig
from .pipeline.runner import run_pipeline
