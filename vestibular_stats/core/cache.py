"""In-memory TTL/LRU cache engine for expensive aggregate statistics."""

import asyncio
import logging
import re
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from vestibular_stats.core.events import CacheListener, EvictionReason
from vestibular_stats.models import CacheMetrics

logger = logging.getLogger(__name__)

# Rough per-entry size used for the memory usage estimate
ENTRY_SIZE_ESTIMATE = 1024


class CacheConfigError(ValueError):
    """Raised when the cache is configured with invalid values."""


@dataclass
class CacheEntry:
    """A single cached value with its bookkeeping."""

    key: str
    data: Any
    created_at: float
    ttl_seconds: float
    last_accessed_at: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_seconds


class CacheEngine:
    """Capacity-bounded in-memory cache with TTL expiry and LRU eviction.

    All operations are synchronous and meant to run on a single event loop,
    so the entry map needs no locking. The only suspension point is the
    factory awaited by :meth:`get_or_set`.

    Expired entries are removed lazily by whichever lookup finds them, and
    proactively by a periodic sweep once :meth:`start` has been called.

    ``None`` is the miss value, so it cannot be stored.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: int = 1000,
        cleanup_interval: float = 60.0,
        listener: Optional[CacheListener] = None,
        clock: Callable[[], float] = time.monotonic,
        single_flight: bool = False,
    ):
        """Initialize the cache engine.

        Args:
            default_ttl: Time-to-live in seconds for entries set without one
            max_size: Maximum number of entries before LRU eviction kicks in
            cleanup_interval: Seconds between background sweeps of expired entries
            listener: Observer notified of hits, misses, sets and evictions
            clock: Monotonic time source in seconds (injectable for tests)
            single_flight: Share one in-flight factory call between concurrent
                misses on the same key in ``get_or_set``
        """
        if default_ttl <= 0:
            raise CacheConfigError(f"default_ttl must be positive, got {default_ttl}")
        if max_size <= 0:
            raise CacheConfigError(f"max_size must be positive, got {max_size}")
        if cleanup_interval <= 0:
            raise CacheConfigError(f"cleanup_interval must be positive, got {cleanup_interval}")

        self.default_ttl = default_ttl
        self.max_size = max_size
        self.cleanup_interval = cleanup_interval
        self.single_flight = single_flight

        self._entries: dict[str, CacheEntry] = {}
        self._listener = listener or CacheListener()
        self._clock = clock
        self._pending: dict[str, asyncio.Future] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._sweeping = False

        self._hits = 0
        self._misses = 0
        self._evictions = 0

        logger.info(
            f"Cache engine initialized (default_ttl={default_ttl}s, max_size={max_size}, "
            f"cleanup_interval={cleanup_interval}s, single_flight={single_flight})"
        )

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        """Return stored keys, including expired entries not yet swept."""
        return list(self._entries)

    def get(self, key: str) -> Optional[Any]:
        """Get a value from the cache.

        Args:
            key: Cache key

        Returns:
            Cached value, or None if the key was never set or has expired
        """
        entry = self._entries.get(key)
        if entry is None:
            self._record_miss(key)
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._remove(key, "ttl")
            self._record_miss(key)
            return None

        entry.last_accessed_at = now
        entry.access_count += 1
        self._hits += 1
        self._notify("on_hit", key)
        return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, evicting the least recently used entry if full.

        Args:
            key: Cache key
            value: Value to cache (must not be None)
            ttl: Time-to-live in seconds, defaults to ``default_ttl``
        """
        if value is None:
            raise ValueError("Cannot cache None; it is reserved for cache misses")
        ttl_seconds = self._resolve_ttl(ttl)

        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_lru()

        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            data=value,
            created_at=now,
            ttl_seconds=ttl_seconds,
            last_accessed_at=now,
        )
        self._notify("on_set", key, ttl_seconds)

    def has(self, key: str) -> bool:
        """Check whether a live entry exists without counting it as an access."""
        entry = self._entries.get(key)
        if entry is None:
            return False

        if entry.is_expired(self._clock()):
            self._remove(key, "ttl")
            return False

        return True

    def delete(self, key: str) -> bool:
        """Remove an entry.

        Returns:
            True if an entry was removed
        """
        if key not in self._entries:
            return False

        del self._entries[key]
        self._notify("on_evicted", key, "manual")
        return True

    def invalidate_pattern(self, pattern: Union[str, re.Pattern]) -> int:
        """Remove every key matching a regular expression.

        Args:
            pattern: Regex (string or compiled), matched anywhere in the key

        Returns:
            Number of entries removed
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matching = [key for key in self._entries if regex.search(key)]

        for key in matching:
            del self._entries[key]
            self._notify("on_evicted", key, "manual")

        if matching:
            logger.debug(f"Invalidated {len(matching)} entries matching {regex.pattern!r}")

        return len(matching)

    def clear(self) -> None:
        """Remove all entries, counting them as evictions."""
        count = len(self._entries)
        self._evictions += count
        self._entries.clear()
        self._notify("on_cleared", count)

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value, or compute, store and return it on a miss.

        Concurrent misses on the same key each call ``factory`` unless the
        engine was built with ``single_flight=True``. Errors raised by the
        factory propagate and nothing is stored. A None result is returned
        without being cached.

        Args:
            key: Cache key
            factory: Async callable producing the value on a miss
            ttl: Time-to-live in seconds for the stored value

        Returns:
            Cached or freshly computed value
        """
        ttl_seconds = self._resolve_ttl(ttl)

        cached = self.get(key)
        if cached is not None:
            return cached

        if not self.single_flight:
            return await self._produce(key, factory, ttl_seconds)

        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        # Waiters may not exist; mark the outcome as retrieved either way
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._pending[key] = future
        try:
            value = await self._produce(key, factory, ttl_seconds)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._pending.pop(key, None)

    def get_metrics(self) -> CacheMetrics:
        """Return a snapshot of the cache counters."""
        total = self._hits + self._misses
        return CacheMetrics(
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            entries=len(self._entries),
            hit_rate=(self._hits / total) * 100 if total > 0 else 0.0,
            memory_usage=len(self._entries) * ENTRY_SIZE_ESTIMATE,
        )

    def reset_metrics(self) -> None:
        """Reset hit, miss and eviction counters."""
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def cleanup_expired(self) -> int:
        """Sweep the cache and remove every expired entry.

        Returns:
            Number of entries removed (0 if a sweep is already running)
        """
        if self._sweeping:
            return 0

        self._sweeping = True
        try:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key, "ttl")
        finally:
            self._sweeping = False

        if expired:
            logger.info(f"Cache cleanup removed {len(expired)} expired entries")

        return len(expired)

    def start(self) -> None:
        """Start the periodic cleanup sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            logger.warning("Cache cleanup task already running")
            return

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Started cache cleanup task (every {self.cleanup_interval}s)")

    async def close(self) -> None:
        """Stop the cleanup sweep and drop all entries."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        self.clear()
        logger.info("Cache engine closed")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("Error during cache cleanup")

    async def _produce(self, key: str, factory: Callable[[], Awaitable[Any]], ttl: float) -> Any:
        value = await factory()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        if ttl is None:
            return self.default_ttl
        if ttl <= 0:
            raise CacheConfigError(f"ttl must be positive, got {ttl}")
        return ttl

    def _evict_lru(self) -> None:
        # Ties go to the first entry in insertion order
        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        self._remove(oldest_key, "size")

    def _remove(self, key: str, reason: EvictionReason) -> None:
        del self._entries[key]
        self._evictions += 1
        self._notify("on_evicted", key, reason)

    def _record_miss(self, key: str) -> None:
        self._misses += 1
        self._notify("on_miss", key)

    def _notify(self, event: str, *args: Any) -> None:
        try:
            getattr(self._listener, event)(*args)
        except Exception:
            logger.exception(f"Cache listener failed handling {event}")
