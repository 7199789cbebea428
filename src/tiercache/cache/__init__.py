"""Cache layer for tiercache.

Provides two-tier caching with the cache-aside pattern:
- In-process LRU tier bounded by entry count
- Optional Redis tier shared by every instance, failing soft
- Single-flight loading so concurrent misses hit the source once
- Key, prefix and tag invalidation across tiers and instances
- TTL-based expiration for memory management
"""

from tiercache.cache.backend import CacheBackend, CacheEntry
from tiercache.cache.invalidation import (
    InvalidationBroadcaster,
    InvalidationMessage,
    InvalidationRouter,
    InvalidationType,
)
from tiercache.cache.keys import CacheKeys
from tiercache.cache.local import LocalCache
from tiercache.cache.orchestrator import CacheConfig, CacheOrchestrator
from tiercache.cache.redis import RedisCache, RedisConnectionState
from tiercache.cache.singleflight import InFlightRequest, SingleFlight
from tiercache.cache.warmer import CacheWarmer, WarmJob, WarmResult

__all__ = [
    # Orchestration
    "CacheConfig",
    "CacheOrchestrator",
    "CacheWarmer",
    "WarmJob",
    "WarmResult",
    # Tiers
    "CacheBackend",
    "CacheEntry",
    "LocalCache",
    "RedisCache",
    "RedisConnectionState",
    # Keys
    "CacheKeys",
    # Coalescing
    "InFlightRequest",
    "SingleFlight",
    # Invalidation
    "InvalidationBroadcaster",
    "InvalidationMessage",
    "InvalidationRouter",
    "InvalidationType",
]
