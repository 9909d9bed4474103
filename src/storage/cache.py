"""In-process cache manager and cache-aside helper."""

import fnmatch
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

log = structlog.stdlib.get_logger()

T = TypeVar("T")


class CacheManager:
    """TTL cache with an explicit start/close lifecycle.

    The cache is purely an optimization: callers must produce the same results
    with it disabled.
    """

    def __init__(
        self, default_ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize cache manager.

        Args:
            default_ttl_seconds: TTL applied when set() is called without one
            clock: Monotonic clock in seconds, injectable for tests
        """
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._started = False
        self.hits = 0
        self.misses = 0

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Make the cache available."""
        self._started = True
        log.info("cache_started", default_ttl_seconds=self._default_ttl)

    async def close(self) -> None:
        """Drop all entries and stop serving."""
        self._entries.clear()
        self._started = False
        log.info("cache_closed", hits=self.hits, misses=self.misses)

    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("Cache manager is not started")

    async def get(self, key: str) -> Any | None:
        """Get a live entry, or None on a miss."""
        self._ensure_started()
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Store an entry for ttl_seconds (default TTL if None)."""
        self._ensure_started()
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        self._entries[key] = (self._clock() + ttl, value)

    async def invalidate(self, key: str) -> None:
        """Remove one entry if present."""
        self._ensure_started()
        self._entries.pop(key, None)

    async def invalidate_pattern(self, pattern: str) -> int:
        """
        Remove all entries whose key matches a glob pattern.

        Args:
            pattern: fnmatch-style pattern, e.g. "device:user-1:*"

        Returns:
            Number of entries removed
        """
        self._ensure_started()
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]

        log.debug("cache_invalidated", pattern=pattern, count=len(matched))
        return len(matched)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


async def cache_aside(
    cache: CacheManager | None,
    key: str,
    loader: Callable[[], Awaitable[T]],
    ttl_seconds: float | None = None,
) -> T:
    """
    Read through the cache, loading and storing the value on a miss.

    None results are not cached, so a later load can observe a newly created value.

    Args:
        cache: Cache manager, or None to always call the loader
        key: Cache key
        loader: Coroutine function producing the value
        ttl_seconds: Entry TTL (cache default if None)

    Returns:
        Cached or freshly loaded value
    """
    if cache is None:
        return await loader()

    cached = await cache.get(key)
    if cached is not None:
        return cached

    value = await loader()
    if value is not None:
        await cache.set(key, value, ttl_seconds)
    return value
