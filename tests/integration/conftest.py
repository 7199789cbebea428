"""Integration test fixtures using Docker.

Provides a containerized Redis for realistic testing of the distributed tier
and of cross-instance invalidation.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator
from urllib.parse import urlparse

import pytest
import pytest_asyncio

REDIS_IMAGE = "redis:7-alpine"


def _docker_host(client) -> str:
    """Resolve the host that published container ports are reachable on."""
    base_url = client.api.base_url
    if base_url.startswith(("unix://", "npipe://", "http+docker://")):
        return "localhost"
    return urlparse(base_url).hostname or "localhost"


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        import docker

        client = docker.from_env()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_url(docker_client) -> Iterator[str]:
    """Start a Redis container for the session and yield its URL."""
    container = docker_client.containers.run(
        REDIS_IMAGE, detach=True, ports={"6379/tcp": None}
    )
    try:
        container.reload()
        bindings = container.attrs["NetworkSettings"]["Ports"].get("6379/tcp")
        if not bindings:
            raise RuntimeError(f"Port 6379 not exposed on container {container.short_id}")
        yield f"redis://{_docker_host(docker_client)}:{bindings[0]['HostPort']}/0"
    finally:
        container.remove(force=True, v=True)


@pytest_asyncio.fixture
async def redis_client(redis_url: str):
    """Create a Redis client for tests."""
    import redis.asyncio as redis

    client = redis.from_url(redis_url)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest_asyncio.fixture
async def orchestrators(redis_url: str, redis_client) -> AsyncIterator[tuple]:
    """Two started orchestrators sharing the container, as two app instances."""
    from tiercache.cache.orchestrator import CacheConfig, CacheOrchestrator

    instances = [
        CacheOrchestrator(
            CacheConfig(
                distributed_endpoint=redis_url,
                distributed_timeout_millis=1000,
                key_prefix="itest",
                sweep_interval_seconds=0,
                instance_id=name,
            )
        )
        for name in ("node-a", "node-b")
    ]
    for instance in instances:
        await instance.start()

    yield tuple(instances)

    for instance in instances:
        await instance.stop()


async def _wait_for_redis(client, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
