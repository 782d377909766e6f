# cn_portal/search/cache.py
"""
Explicit TTL cache for search responses and match counts.

The cache is an object handed to the search entry point, not module state,
so callers own its lifetime and tests can drive the clock.

Env vars:
- SEARCH_CACHE_TTL_SECONDS (default: 60)
"""

import os
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple

DEFAULT_TTL_SECONDS = float(os.getenv("SEARCH_CACHE_TTL_SECONDS", "60"))

_MISSING = object()


class SearchCache:
    """Thread-safe TTL cache with LRU eviction once max_entries is reached."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic,
                 max_entries: int = 256):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def evict_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl_seconds]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING


def cached(cache: Optional[SearchCache], key: Hashable, compute: Callable[[], Any]) -> Tuple[Any, bool]:
    """Return (value, hit). With no cache, always computes."""
    if cache is None:
        return compute(), False
    value = cache.get(key, _MISSING)
    if value is not _MISSING:
        return value, True
    value = compute()
    cache.set(key, value)
    return value, False
