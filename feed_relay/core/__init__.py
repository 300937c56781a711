"""
Core domain models.

This package contains the value types, the feed state machine and the
identity helpers shared by every pipeline stage.
"""

from .identity import clean_text, content_hash, normalize_link, normalize_title
from .locks import KeyedLocks
from .state import DEFAULT_BACKOFF, BackoffPolicy, FeedState
from .types import (
    AIAnalysis,
    AnalysisStatus,
    DecisionStatus,
    DedupDecision,
    Enclosure,
    FeedConfig,
    Publication,
    PublicationStatus,
    RawItem,
    StoredItem,
    WindowEntry,
    utc_now,
)

__all__ = [
    "AIAnalysis",
    "AnalysisStatus",
    "BackoffPolicy",
    "DEFAULT_BACKOFF",
    "DecisionStatus",
    "DedupDecision",
    "Enclosure",
    "FeedConfig",
    "FeedState",
    "KeyedLocks",
    "Publication",
    "PublicationStatus",
    "RawItem",
    "StoredItem",
    "WindowEntry",
    "clean_text",
    "content_hash",
    "normalize_link",
    "normalize_title",
    "utc_now",
]
