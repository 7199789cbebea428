"""tiercache: two-tier cache-aside layer with single-flight loading.

    from tiercache import CacheOrchestrator

    async with CacheOrchestrator.from_settings() as cache:
        value = await cache.get_or_set("lookup:institutions", load_institutions, ttl=600)
"""

from tiercache.cache import CacheConfig, CacheKeys, CacheOrchestrator, CacheWarmer
from tiercache.errors import (
    CacheError,
    ConfigurationError,
    DistributedUnavailable,
    LoaderError,
    SerializationError,
)

__version__ = "0.1.0"

__all__ = [
    "CacheConfig",
    "CacheKeys",
    "CacheOrchestrator",
    "CacheWarmer",
    "CacheError",
    "ConfigurationError",
    "DistributedUnavailable",
    "LoaderError",
    "SerializationError",
]
