"""Bounded key/value cache with per-entry expiry and LRU eviction."""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Optional


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """
    In-memory cache used by every upstream data source.

    ``get`` treats entries older than ``ttl_seconds`` as absent. ``get_stale``
    ignores expiry and returns the last value written for a key; it backs the
    degrade-on-upstream-failure policy and survives until the key is
    overwritten, evicted or the cache is cleared.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize cache.

        Args:
            max_entries: Entries beyond this count are evicted least-recently-used first
            ttl_seconds: Freshness window for ``get``
            clock: Time source in seconds (injectable for tests)
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                return None
            self._entries.move_to_end(key)
            return entry.value

    def get_stale(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else None

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def age(self, key: Hashable) -> Optional[float]:
        """Seconds since ``key`` was last written, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return self._clock() - (entry.expires_at - self.ttl_seconds)
