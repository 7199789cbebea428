"""Shared fixtures for cache unit tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from fakeredis import aioredis as fakeredis_aioredis

from tiercache.cache.redis import RedisCache
from tiercache.observability.metrics import CacheMetrics, MetricsRegistry


@pytest.fixture
def metrics() -> CacheMetrics:
    """Counter sink that does not touch the global Prometheus registry."""
    return CacheMetrics(registry=MetricsRegistry(_initialized=True))


@pytest.fixture
def fake_redis() -> Any:
    return fakeredis_aioredis.FakeRedis()


@pytest_asyncio.fixture
async def redis_cache(
    fake_redis: Any, clock: Any, metrics: CacheMetrics
) -> AsyncIterator[RedisCache]:
    """A connected Redis tier backed by fakeredis."""
    cache = RedisCache(
        client=fake_redis,
        key_prefix="test",
        default_ttl=300,
        timeout=0.5,
        reconnect_delay_initial=60,
        clock=clock,
        metrics=metrics,
    )
    assert await cache.connect()
    yield cache
    await cache.close()
    await fake_redis.aclose()
