"""Cache event listeners.

The cache engine reports what happens to its entries through a listener
object injected at construction time. Listeners are side channels for
logging and metrics; the engine never depends on them for correctness.
"""

import logging
from typing import Any, Literal

logger = logging.getLogger(__name__)

EvictionReason = Literal["ttl", "size", "manual"]


class CacheListener:
    """Observer for cache engine events. Every method defaults to a no-op."""

    def on_hit(self, key: str) -> None:
        """Called when ``get`` returns a live entry."""

    def on_miss(self, key: str) -> None:
        """Called when ``get`` finds nothing or only an expired entry."""

    def on_set(self, key: str, ttl: float) -> None:
        """Called after an entry has been stored."""

    def on_evicted(self, key: str, reason: EvictionReason) -> None:
        """Called after an entry has been removed for ``reason``."""

    def on_cleared(self, count: int) -> None:
        """Called after the whole cache has been cleared of ``count`` entries."""


class LoggingCacheListener(CacheListener):
    """Writes cache events to the standard logger."""

    def __init__(self, name: str = "statistics", level: int = logging.DEBUG):
        self.name = name
        self.level = level

    def on_hit(self, key: str) -> None:
        logger.log(self.level, f"[{self.name}] cache hit: {key}")

    def on_miss(self, key: str) -> None:
        logger.log(self.level, f"[{self.name}] cache miss: {key}")

    def on_set(self, key: str, ttl: float) -> None:
        logger.log(self.level, f"[{self.name}] cache set: {key} (ttl={ttl}s)")

    def on_evicted(self, key: str, reason: EvictionReason) -> None:
        logger.log(self.level, f"[{self.name}] cache evicted: {key} (reason={reason})")

    def on_cleared(self, count: int) -> None:
        logger.log(self.level, f"[{self.name}] cache cleared ({count} entries)")


class CompositeCacheListener(CacheListener):
    """Fans every event out to a list of listeners.

    A listener that raises is logged and skipped; the remaining listeners
    still receive the event.
    """

    def __init__(self, *listeners: CacheListener):
        self._listeners: list[CacheListener] = list(listeners)

    def add(self, listener: CacheListener) -> None:
        """Register another listener."""
        self._listeners.append(listener)

    def on_hit(self, key: str) -> None:
        self._dispatch("on_hit", key)

    def on_miss(self, key: str) -> None:
        self._dispatch("on_miss", key)

    def on_set(self, key: str, ttl: float) -> None:
        self._dispatch("on_set", key, ttl)

    def on_evicted(self, key: str, reason: EvictionReason) -> None:
        self._dispatch("on_evicted", key, reason)

    def on_cleared(self, count: int) -> None:
        self._dispatch("on_cleared", count)

    def _dispatch(self, event: str, *args: Any) -> None:
        for listener in self._listeners:
            try:
                getattr(listener, event)(*args)
            except Exception:
                logger.exception(f"Cache listener {listener!r} failed handling {event}")
