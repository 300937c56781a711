"""Per-key mutual exclusion for concurrent workers."""

from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Hashable, Iterator


class KeyedLocks:
    """Hands out one lock per key; unrelated keys never contend."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
