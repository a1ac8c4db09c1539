"""
Process-local caching utilities for frequently read data
LRU cache with TTL plus an in-flight request deduplicator
"""

import asyncio
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


class LRUCache:
    """Bounded LRU cache with per-entry TTL; safe to share between threads"""

    def __init__(self, max_size: int = 256, ttl_seconds: float = 30.0):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        # key -> (expires_at, value)
        self._entries: "OrderedDict[str, tuple[float, Any]]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache, counting a miss for absent or expired keys"""
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                self.misses += 1
                return default

            expires_at, value = entry
            if time.monotonic() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return default

            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value with TTL (defaults to the cache-wide TTL)"""
        expires_at = time.monotonic() + (self.ttl_seconds if ttl is None else ttl)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (expires_at, value)
            while len(self._entries) > self.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"🧹 LRU evicted {evicted_key}")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": round(self.hits / total, 4) if total else 0.0,
            }


class RequestDeduplicator:
    """
    Collapse concurrent identical requests into one execution.

    Callers awaiting `run` with the same key while a call is in flight share
    its result (or its exception). The key is forgotten once the call settles.
    """

    def __init__(self):
        self._in_flight: dict[str, asyncio.Future] = {}
        self.deduplicated = 0

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._in_flight.get(key)
        if existing is not None:
            self.deduplicated += 1
            logger.debug(f"🔁 Joined in-flight request: {key}")
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(factory())
        self._in_flight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)


# Global instances
dashboard_cache = LRUCache(max_size=128, ttl_seconds=30)
request_deduplicator = RequestDeduplicator()


async def get_or_compute(key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
    """Serve `key` from the dashboard cache, computing it at most once concurrently"""
    value = dashboard_cache.get(key, _MISSING)
    if value is not _MISSING:
        return value

    value = await request_deduplicator.run(key, factory)
    dashboard_cache.set(key, value)
    return value


def get_cache_stats() -> dict:
    """Cache statistics (for monitoring)"""
    return {
        "dashboard": dashboard_cache.stats(),
        "deduplicator": {
            "in_flight": request_deduplicator.in_flight,
            "deduplicated": request_deduplicator.deduplicated,
        },
    }
