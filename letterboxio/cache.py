from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")

CacheKey = tuple[str, Hashable]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """
    In-memory expiring key/value store shared by every read path.

    - Keys are ``(domain, id)`` tuples, e.g. ``("meta", "interstellar")``.
    - Expired entries are evicted lazily on read; there is no background sweep.
    - All operations hold a lock since Flask handlers and the action queue
      worker touch the cache from different threads.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[T]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: CacheKey, value: T, ttl_s: float) -> None:
        expires_at = self._clock() + max(0.0, float(ttl_s))
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def delete(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __contains__(self, key: CacheKey) -> bool:
        return self.get(key) is not None

    def prune(self) -> int:
        """Remove expired entries. Returns number of entries deleted."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, int]:
        """Entry counts per domain, expired-but-unread entries included."""
        with self._lock:
            counts = Counter(domain for domain, _ in self._entries)
        return dict(counts)
