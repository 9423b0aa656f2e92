"""
Recommendation cache: TTL entries keyed by request shape, single-flight
recompute, and per-user invalidation.

Storage is behind the Cache port; InMemoryCache serves a single process.
A multi-instance deployment would plug an external key-value store in
behind the same three operations.
"""
import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from typing import NamedTuple
from urllib.parse import quote

from .blender import RecommendationResult
from .config import CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    user_id: str
    limit: int
    page: int
    exclusions: tuple[int, ...] = ()

    @classmethod
    def build(cls, user_id: str, limit: int, page: int, exclude_ids: Iterable[int] = ()) -> "CacheKey":
        return cls(user_id, limit, page, tuple(sorted(set(exclude_ids))))

    def encode(self) -> str:
        key = f"{user_prefix(self.user_id)}{self.limit}:{self.page}"
        if self.exclusions:
            key += ":x" + ",".join(str(i) for i in self.exclusions)
        return key


def user_prefix(user_id: str) -> str:
    # Quoting keeps ":" inside user ids from colliding with another user's prefix
    return f"{quote(user_id, safe='')}:"


@dataclass(frozen=True)
class CacheEntry:
    value: RecommendationResult
    stored_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class Cache(ABC):
    """Key-value port. Expired entries may still be returned; callers check freshness."""

    @abstractmethod
    def get(self, key: str) -> CacheEntry | None: ...

    @abstractmethod
    def set(self, key: str, entry: CacheEntry) -> None: ...

    @abstractmethod
    def invalidate_by_prefix(self, prefix: str) -> int: ...


class InMemoryCache(Cache):
    """Dict guarded by a lock; the oldest entry is evicted beyond max_entries."""

    def __init__(self, max_entries: int = 10_000):
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.max_entries = max_entries

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self.max_entries:
                self._entries.pop(next(iter(self._entries)))

    def invalidate_by_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class RecommendationCache:

    def __init__(
        self,
        backend: Cache | None = None,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend if backend is not None else InMemoryCache()
        self.ttl = ttl
        self._clock = clock
        self._inflight: dict[str, asyncio.Task] = {}
        # Running builds an invalidation overtook; they finish but are not stored
        self._superseded: set[asyncio.Task] = set()

    async def get_or_compute(
        self,
        key: CacheKey,
        compute: Callable[[], Awaitable[RecommendationResult]],
    ) -> RecommendationResult:
        """
        Return the fresh cached value, or build it once for all concurrent callers.

        The build runs as its own task. A caller that is cancelled stops
        waiting but does not cancel the build, which still populates the
        cache for the next caller.
        """
        encoded = key.encode()
        entry = self.backend.get(encoded)
        if entry is not None and entry.is_fresh(self._clock()):
            logger.debug(f"Cache hit for {encoded}")
            return entry.value

        task = self._inflight.get(encoded)
        if task is None:
            logger.debug(f"Cache miss for {encoded}")
            task = asyncio.ensure_future(self._build(encoded, compute))
            self._inflight[encoded] = task
            task.add_done_callback(lambda t: self._forget(encoded, t))
        else:
            logger.debug(f"Joining in-flight build for {encoded}")
        return await asyncio.shield(task)

    async def _build(self, encoded: str, compute) -> RecommendationResult:
        result = await compute()
        if result.stale:
            return result
        if asyncio.current_task() in self._superseded:
            logger.debug(f"Discarding build for {encoded}; user invalidated meanwhile")
            return result
        now = self._clock()
        self.backend.set(encoded, CacheEntry(result, stored_at=now, expires_at=now + self.ttl))
        return result

    def _forget(self, encoded: str, task: asyncio.Task) -> None:
        if self._inflight.get(encoded) is task:
            del self._inflight[encoded]
        self._superseded.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Recommendation build for {encoded} failed: {task.exception()!r}")

    def peek_stale(self, key: CacheKey) -> RecommendationResult | None:
        """Last stored value for key regardless of age, marked stale."""
        entry = self.backend.get(key.encode())
        return replace(entry.value, stale=True) if entry is not None else None

    def invalidate(self, user_id: str) -> int:
        """Drop every entry for user_id, all limits and pages."""
        prefix = user_prefix(user_id)
        for encoded in [k for k in self._inflight if k.startswith(prefix)]:
            self._superseded.add(self._inflight.pop(encoded))
        dropped = self.backend.invalidate_by_prefix(prefix)
        logger.debug(f"Invalidated {dropped} cache entries for {user_id}")
        return dropped

    @property
    def inflight(self) -> int:
        return len(self._inflight)
