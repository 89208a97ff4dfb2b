"""
In-process query cache with single-flight fetches.

Keys are tuples of strings, e.g. ("identity", user_id) or
("mentorship", "requests", "requester", user_id). Invalidation is by prefix:
invalidating ("mentorship",) marks every mentorship key stale.

Invalidation never deletes the value. The entry is marked stale so readers
that want last-known-good (offline, fetch error) can still `peek` it, and
the next `fetch` goes back to the server.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from campus_sync.components.core.constants import SyncConstants
from campus_sync.shared.config.logging import get_logger

logger = get_logger(__name__)

CacheKey = tuple[str, ...]

T = TypeVar("T")


class CacheStore(Protocol):
    """What the invalidation router and the caches built on top need."""

    def invalidate(self, key: CacheKey) -> int:
        ...

    def get(self, key: CacheKey) -> Any | None:
        ...

    def set_single_flight(
        self,
        key: CacheKey,
        awaitable: Awaitable[T],
        ttl: float | None = None,
    ) -> Awaitable[T]:
        ...


@dataclass
class CacheEntry:
    """Single cache entry with value and staleness deadline."""

    value: Any
    fetched_at: float
    stale_after: float | None = None  # None = fresh until invalidated
    generation: int = 0
    invalidated: bool = False

    def is_stale(self, now: float) -> bool:
        if self.invalidated:
            return True
        return self.stale_after is not None and now >= self.stale_after


def key_matches(prefix: CacheKey, key: CacheKey) -> bool:
    """A key matches a prefix if it starts with every element of it."""
    return key[: len(prefix)] == prefix


def _consume_result(task: asyncio.Task) -> None:
    # Every consumer may have been cancelled; keep asyncio from reporting
    # "exception was never retrieved" for a fetch nobody is waiting on.
    if not task.cancelled():
        task.exception()


class QueryCache:
    """
    Key/value cache with TTL, prefix invalidation and single-flight fetches.

    Ordering guarantee per key: an invalidation bumps the key's generation and
    detaches the in-flight fetch, so a fetch that started before the
    invalidation is never stored as fresh. A later reader starts a new fetch.

    Consumers await in-flight fetches through `asyncio.shield`: cancelling one
    reader never cancels the fetch the others are waiting on.

    Usage:
        cache = QueryCache()
        profile = await cache.fetch(("identity", user_id), load_identity, ttl=86400)
        cache.invalidate(("identity", user_id))
    """

    def __init__(
        self,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize cache.

        Args:
            default_ttl: Seconds a stored value stays fresh when `ttl` is not given.
                None keeps values fresh until invalidated.
            clock: Monotonic time source.
        """
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._generations: dict[CacheKey, int] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._fetches = 0
        self._joined = 0
        self._discarded = 0
        self._invalidations = 0

    @property
    def size(self) -> int:
        """Current number of entries in cache (fresh or stale)."""
        return len(self._entries)

    @property
    def hit_ratio(self) -> float:
        """Cache hit ratio (0.0 to 1.0)."""
        total = self._hits + self._misses
        return self._hits / total if total > 0 else 0.0

    def generation(self, key: CacheKey) -> int:
        return self._generations.get(key, 0)

    def is_fetching(self, key: CacheKey) -> bool:
        return key in self._inflight

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, key: CacheKey) -> Any | None:
        """
        Get the fresh value for a key.

        Returns:
            Cached value, or None if absent, expired or invalidated.
        """
        entry = self._entries.get(key)
        if entry is None or entry.is_stale(self._clock()):
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def peek(self, key: CacheKey) -> CacheEntry | None:
        """Return the entry even if stale (last-known-good)."""
        return self._entries.get(key)

    def is_fresh(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_stale(self._clock())

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Callable[[], Awaitable[T]],
        ttl: float | None = None,
        force: bool = False,
    ) -> T:
        """
        Return the fresh value for a key, fetching it at most once.

        Args:
            key: Cache key.
            fetcher: Zero-argument coroutine function producing the value.
            ttl: Freshness window for the stored result.
            force: Ignore a fresh value (still joins an in-flight fetch).

        Raises:
            Whatever the fetcher raises; the previous entry is left untouched.
        """
        if not force:
            entry = self._entries.get(key)
            if entry is not None and not entry.is_stale(self._clock()):
                self._hits += 1
                return entry.value
            self._misses += 1

        task = self._inflight.get(key)
        if task is not None:
            self._joined += 1
            return await asyncio.shield(task)

        return await self.set_single_flight(key, fetcher(), ttl)

    # =========================================================================
    # Writes
    # =========================================================================

    def set_single_flight(
        self,
        key: CacheKey,
        awaitable: Awaitable[T],
        ttl: float | None = None,
    ) -> Awaitable[T]:
        """
        Run `awaitable` as the one fetch for `key` and store its result.

        If a fetch is already in flight for the key, the offered awaitable is
        discarded and the caller joins the existing fetch.

        Returns:
            A shielded awaitable resolving to the fetched value.
        """
        existing = self._inflight.get(key)
        if existing is not None:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._joined += 1
            return asyncio.shield(existing)

        if len(self._inflight) >= SyncConstants.MAX_INFLIGHT_FETCHES:
            logger.warning("Unusually many concurrent fetches", inflight=len(self._inflight))

        generation = self.generation(key)
        task = asyncio.ensure_future(self._run_fetch(key, awaitable, generation, ttl))
        task.add_done_callback(_consume_result)
        self._inflight[key] = task
        self._fetches += 1
        return asyncio.shield(task)

    async def _run_fetch(
        self,
        key: CacheKey,
        awaitable: Awaitable[T],
        generation: int,
        ttl: float | None,
    ) -> T:
        try:
            value = await awaitable
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

        if self.generation(key) == generation:
            self._store(key, value, ttl)
        else:
            self._discarded += 1
            logger.debug("Discarded fetch result invalidated mid-flight", key=key)
        return value

    def set(self, key: CacheKey, value: Any, ttl: float | None = None) -> None:
        """Store a fresh value (e.g. a mutation response)."""
        self._bump(key)
        self._inflight.pop(key, None)
        self._store(key, value, ttl)

    def _store(self, key: CacheKey, value: Any, ttl: float | None) -> None:
        now = self._clock()
        if ttl is None:
            ttl = self._default_ttl
        self._entries[key] = CacheEntry(
            value=value,
            fetched_at=now,
            stale_after=now + ttl if ttl is not None else None,
            generation=self.generation(key),
        )

    def _bump(self, key: CacheKey) -> None:
        self._generations[key] = self._generations.get(key, 0) + 1

    def invalidate(self, key: CacheKey) -> int:
        """
        Mark a key and every key under it stale.

        In-flight fetches for matching keys are detached: their consumers
        still receive the result, but it is not stored.

        Returns:
            Number of keys affected.
        """
        matched = {
            k for k in (*self._entries, *self._inflight)
            if key_matches(key, k)
        }
        matched.add(key)

        for k in matched:
            self._bump(k)
            self._inflight.pop(k, None)
            entry = self._entries.get(k)
            if entry is not None:
                entry.invalidated = True

        self._invalidations += 1
        return len(matched)

    def remove(self, key: CacheKey) -> None:
        """Drop a single entry outright."""
        self._bump(key)
        self._inflight.pop(key, None)
        self._entries.pop(key, None)

    def clear(self) -> int:
        """
        Clear all entries and detach every in-flight fetch.

        Returns:
            Number of entries cleared.
        """
        count = len(self._entries)
        for key in (*self._entries, *self._inflight):
            self._bump(key)
        self._entries.clear()
        self._inflight.clear()
        return count

    def get_stats(self) -> dict[str, int | float]:
        """Get cache statistics."""
        return {
            "size": self.size,
            "inflight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "hit_ratio": round(self.hit_ratio, 3),
            "fetches": self._fetches,
            "joined_fetches": self._joined,
            "discarded_results": self._discarded,
            "invalidations": self._invalidations,
        }
