"""
Feed fetching stage.

This package polls RSS/Atom feeds over HTTP and turns the bodies into
normalized items.
"""

from .parser import FeedParser, ParsedFeed
from .runner import ErrorClass, FetchMetrics, FetchOutcome, FetchResult, FetchRunner
from .transport import HttpResponse, HttpTransport

__all__ = [
    "ErrorClass",
    "FeedParser",
    "FetchMetrics",
    "FetchOutcome",
    "FetchResult",
    "FetchRunner",
    "HttpResponse",
    "HttpTransport",
    "ParsedFeed",
]
