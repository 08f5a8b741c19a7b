"""Prometheus metrics for monitoring."""

from prometheus_client import Counter, Gauge, Histogram

from vestibular_stats.core.events import CacheListener, EvictionReason

# Cache metrics
cache_hits_total = Counter(
    "stats_cache_hits_total",
    "Total number of statistics cache hits",
)

cache_misses_total = Counter(
    "stats_cache_misses_total",
    "Total number of statistics cache misses",
)

cache_sets_total = Counter(
    "stats_cache_sets_total",
    "Total number of values stored in the statistics cache",
)

cache_evictions_total = Counter(
    "stats_cache_evictions_total",
    "Total number of statistics cache evictions",
    ["reason"],
)

cache_entries = Gauge(
    "stats_cache_entries",
    "Number of entries currently held by the statistics cache",
)

# Recompute metrics
stats_recompute_seconds = Histogram(
    "stats_recompute_seconds",
    "Time spent recomputing statistics aggregates on a cache miss",
    ["kind"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class PrometheusCacheListener(CacheListener):
    """Feeds cache events into the Prometheus collectors above."""

    def __init__(self, cache_size=None):
        """Initialize the listener.

        Args:
            cache_size: Optional callable returning the current entry count,
                used to keep the entries gauge up to date
        """
        self._cache_size = cache_size

    def on_hit(self, key: str) -> None:
        cache_hits_total.inc()

    def on_miss(self, key: str) -> None:
        cache_misses_total.inc()

    def on_set(self, key: str, ttl: float) -> None:
        cache_sets_total.inc()
        self._update_entries()

    def on_evicted(self, key: str, reason: EvictionReason) -> None:
        cache_evictions_total.labels(reason=reason).inc()
        self._update_entries()

    def on_cleared(self, count: int) -> None:
        if count:
            cache_evictions_total.labels(reason="manual").inc(count)
        cache_entries.set(0)

    def _update_entries(self) -> None:
        if self._cache_size is not None:
            cache_entries.set(self._cache_size())
