"""In-process TTL cache used by the aggregation core."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    """Cached value together with its write time and lifetime."""
    value: V
    stored_at: float
    ttl_seconds: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl_seconds


class TTLCache(Generic[V]):
    """Key/value cache with lazy expiry checked on read.

    Entries are never evicted actively, so memory grows with the number of
    distinct keys seen. Long-lived processes should call ``purge_expired``
    periodically or swap in a bounded (LRU) implementation.

    The cache is meant to be mutated from a single event loop; every method
    completes without awaiting, so no locking is needed.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}
        self._hits = 0
        self._misses = 0

    def get_entry(self, key: Hashable) -> CacheEntry[V] | None:
        """Return the live entry for ``key``, dropping it if it expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def get(self, key: Hashable, default: V | None = None) -> V | None:
        entry = self.get_entry(key)
        if entry is None:
            return default
        return entry.value

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self._clock())

    def set(self, key: Hashable, value: V, *, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock(), ttl_seconds=ttl)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        valid = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return {
            "total_entries": len(self._entries),
            "valid_entries": valid,
            "hits": self._hits,
            "misses": self._misses,
            "ttl_seconds": self.ttl_seconds,
        }
