"""Observability module for tiercache.

Provides metrics, tracing and structured logging:
- Per-tier cache counters mirrored to Prometheus
- OpenTelemetry spans around loader executions
- JSON structured logging with tenant and cache-key context
"""

from tiercache.observability.logging import (
    LogContext,
    cache_key_var,
    configure_logging,
    request_id_var,
    tenant_id_var,
)
from tiercache.observability.metrics import (
    CacheMetrics,
    get_metrics,
    metrics_registry,
)
from tiercache.observability.tracing import (
    get_tracer,
    setup_tracing,
    shutdown_tracing,
)

__all__ = [
    # Logging
    "configure_logging",
    "LogContext",
    "request_id_var",
    "tenant_id_var",
    "cache_key_var",
    # Tracing
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    # Metrics
    "CacheMetrics",
    "metrics_registry",
    "get_metrics",
]
