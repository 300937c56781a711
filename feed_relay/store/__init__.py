"""SQLite-backed repositories."""

from .analysis import AnalysisRepository
from .database import Database
from .feed_state import FeedStateRepository
from .items import ItemRepository, StoreResult
from .publications import PublicationRepository

__all__ = [
    "AnalysisRepository",
    "Database",
    "FeedStateRepository",
    "ItemRepository",
    "PublicationRepository",
    "StoreResult",
]
