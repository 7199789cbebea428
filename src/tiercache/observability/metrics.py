"""Cache metrics for tiercache.

Two layers:
- CacheMetrics: the per-orchestrator sink. Increment-only counters per tier,
  readable through snapshot() for stats endpoints and tests.
- MetricsRegistry: process-wide Prometheus collectors that every sink mirrors
  into, exposed with generate_latest().

Recording never raises. A failure while recording is logged at debug level
and otherwise ignored so that metrics can never change cache behaviour.

Usage:
    from tiercache.observability.metrics import CacheMetrics

    metrics = CacheMetrics()
    metrics.hit("local")
    metrics.snapshot()["local"]["hits"]  # 1
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from tiercache.config import settings

logger = logging.getLogger(__name__)

TIERS = ("local", "distributed", "orchestrator")
COUNTERS = ("hits", "misses", "evictions", "loader_invocations", "loader_errors")


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    cache_hits_total: Any = None
    cache_misses_total: Any = None
    cache_evictions_total: Any = None
    cache_loader_invocations_total: Any = None
    cache_loader_errors_total: Any = None
    cache_operation_duration_seconds: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        from prometheus_client import REGISTRY, Counter, Histogram

        self._registry = REGISTRY

        self.cache_hits_total = Counter(
            "tiercache_cache_hits_total",
            "Cache hits",
            ["tier"],
        )

        self.cache_misses_total = Counter(
            "tiercache_cache_misses_total",
            "Cache misses",
            ["tier"],
        )

        self.cache_evictions_total = Counter(
            "tiercache_cache_evictions_total",
            "Entries evicted to stay within capacity",
            ["tier"],
        )

        self.cache_loader_invocations_total = Counter(
            "tiercache_cache_loader_invocations_total",
            "Upstream loader executions",
            ["tier"],
        )

        self.cache_loader_errors_total = Counter(
            "tiercache_cache_loader_errors_total",
            "Upstream loader failures",
            ["tier"],
        )

        self.cache_operation_duration_seconds = Histogram(
            "tiercache_cache_operation_duration_seconds",
            "Cache operation latency in seconds",
            ["operation", "tier"],
            buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def counter(self, name: str) -> Any:
        """Return the Prometheus counter backing a sink counter name."""
        return getattr(self, f"cache_{name}_total", None)

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if not settings.enable_metrics or self._registry is None:
            return b"# Metrics disabled\n"

        from prometheus_client import generate_latest

        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


class CacheMetrics:
    """Push-only counter sink for one cache orchestrator.

    Counters are kept per tier (local, distributed, orchestrator) and mirrored
    to the global Prometheus registry.
    """

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, dict[str, int]] = {
            tier: dict.fromkeys(COUNTERS, 0) for tier in TIERS
        }
        self._registry = registry

    def _get_registry(self) -> MetricsRegistry:
        if self._registry is None:
            self._registry = get_metrics()
        return self._registry

    def record(self, tier: str, name: str, amount: int = 1) -> None:
        """Increment counter ``name`` for ``tier`` by ``amount``."""
        try:
            with self._lock:
                self._counts[tier][name] += amount
            collector = self._get_registry().counter(name)
            if collector is not None:
                collector.labels(tier=tier).inc(amount)
        except Exception as e:
            logger.debug(f"Failed to record metric {tier}.{name}: {e}")

    def observe(self, operation: str, tier: str, duration: float) -> None:
        """Record an operation duration in seconds."""
        try:
            histogram = self._get_registry().cache_operation_duration_seconds
            if histogram is not None:
                histogram.labels(operation=operation, tier=tier).observe(duration)
        except Exception as e:
            logger.debug(f"Failed to record duration for {tier}.{operation}: {e}")

    def hit(self, tier: str) -> None:
        self.record(tier, "hits")

    def miss(self, tier: str) -> None:
        self.record(tier, "misses")

    def eviction(self, tier: str, count: int = 1) -> None:
        self.record(tier, "evictions", count)

    def loader_invocation(self) -> None:
        self.record("orchestrator", "loader_invocations")

    def loader_error(self) -> None:
        self.record("orchestrator", "loader_errors")

    def snapshot(self) -> dict[str, dict[str, int]]:
        """Return a copy of all counters, keyed by tier."""
        with self._lock:
            return {tier: dict(counts) for tier, counts in self._counts.items()}

    def hit_rate(self) -> float:
        """Fraction of orchestrator lookups answered from either tier."""
        counts = self.snapshot()["orchestrator"]
        total = counts["hits"] + counts["misses"]
        return counts["hits"] / total if total else 0.0
