"""
Per-feed fetch bookkeeping and the exponential backoff policy.

FeedState is immutable: every transition returns a new instance, so the
runner computes the next state in memory and persists it in one write.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from .types import utc_now


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff parameters.

    Attributes:
        base_seconds: Delay after the first consecutive failure
        multiplier: Growth factor per additional failure
        max_seconds: Ceiling for any single delay
    """

    base_seconds: float = 60.0
    multiplier: float = 2.0
    max_seconds: float = 3600.0

    def delay_for(self, error_count: int) -> float:
        if error_count <= 0:
            return 0.0
        # Exponent is bounded so huge error counts cannot overflow a float.
        exponent = min(error_count - 1, 64)
        return min(self.base_seconds * self.multiplier**exponent, self.max_seconds)


DEFAULT_BACKOFF = BackoffPolicy()


@dataclass(frozen=True)
class FeedState:
    """Fetch state of one feed.

    ``error_count == 0`` holds exactly when ``backoff_until`` is None.
    ``last_status == 0`` means the last attempt never got an HTTP response.
    """

    etag: str | None = None
    last_modified: str | None = None
    last_status: int = 0
    error_count: int = 0
    backoff_until: datetime | None = None
    fetched_at: datetime | None = None

    @classmethod
    def initial(cls) -> FeedState:
        return cls()

    @property
    def is_healthy(self) -> bool:
        return self.error_count == 0

    def with_successful_fetch(
        self,
        etag: str | None,
        last_modified: str | None,
        status: int,
        now: datetime | None = None,
    ) -> FeedState:
        """Record a 2xx or 304: store validators, clear errors and backoff."""
        return replace(
            self,
            etag=etag,
            last_modified=last_modified,
            last_status=status,
            error_count=0,
            backoff_until=None,
            fetched_at=now or utc_now(),
        )

    def with_failed_fetch(
        self,
        status: int,
        backoff_seconds: float | None = None,
        policy: BackoffPolicy | None = None,
        now: datetime | None = None,
    ) -> FeedState:
        """Record a failure and push ``backoff_until`` forward.

        The delay comes from the policy for the new error count. A
        server-provided ``backoff_seconds`` (Retry-After) only applies when it
        is longer, and it is capped by the same ceiling.
        """
        policy = policy or DEFAULT_BACKOFF
        now = now or utc_now()
        error_count = self.error_count + 1
        delay = policy.delay_for(error_count)
        if backoff_seconds is not None and backoff_seconds > delay:
            delay = min(float(backoff_seconds), policy.max_seconds)
        return replace(
            self,
            last_status=status,
            error_count=error_count,
            backoff_until=now + timedelta(seconds=delay),
            fetched_at=now,
        )

    def is_in_backoff(self, now: datetime | None = None) -> bool:
        if self.backoff_until is None:
            return False
        return (now or utc_now()) < self.backoff_until

    def backoff_remaining(self, now: datetime | None = None) -> float:
        if self.backoff_until is None:
            return 0.0
        remaining = (self.backoff_until - (now or utc_now())).total_seconds()
        return max(0.0, remaining)

    def to_dict(self) -> dict[str, Any]:
        return {
            "etag": self.etag,
            "last_modified": self.last_modified,
            "last_status": self.last_status,
            "error_count": self.error_count,
            "backoff_until": self.backoff_until.isoformat() if self.backoff_until else None,
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedState:
        return cls(
            etag=data.get("etag"),
            last_modified=data.get("last_modified"),
            last_status=int(data.get("last_status") or 0),
            error_count=int(data.get("error_count") or 0),
            backoff_until=_parse_dt(data.get("backoff_until")),
            fetched_at=_parse_dt(data.get("fetched_at")),
        )


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
