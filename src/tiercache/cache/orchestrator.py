"""Cache orchestrator: cache-aside over a local and a distributed tier.

Domain services wrap expensive lookups explicitly at the call site:

    cache = CacheOrchestrator.from_settings()
    await cache.start()

    stats = await cache.get_or_set(
        CacheKeys.query("state", "institutions", {"page": page, "search": search}),
        lambda: load_institution_stats(page, search),
        ttl=300,
        tags=["state", "institutions"],
    )

    # after a mutation
    await cache.invalidate_tags(["institutions"])

Reads walk the tier chain (local, then distributed) and promote a lower-tier
hit into the tiers above it. On a full miss the loader runs once per key no
matter how many callers are waiting for it (see singleflight.py), and its
result is written to every tier before any caller receives it.

Only LoaderError crosses this boundary. Distributed-tier faults are absorbed
by the tier and turn into a miss or a skipped write.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from tiercache.cache.backend import CacheBackend, CacheEntry
from tiercache.cache.invalidation import (
    INVALIDATION_CHANNEL,
    InvalidationBroadcaster,
    InvalidationRouter,
)
from tiercache.cache.local import LocalCache
from tiercache.cache.redis import RedisCache
from tiercache.cache.singleflight import SingleFlight
from tiercache.config import settings
from tiercache.errors import ConfigurationError, LoaderError
from tiercache.observability.logging import LogContext
from tiercache.observability.metrics import CacheMetrics
from tiercache.observability.tracing import get_tracer

logger = logging.getLogger(__name__)

Loader = Callable[[], Any]


@dataclass
class CacheConfig:
    """Validated construction input for CacheOrchestrator."""

    local_capacity: int = 10_000
    default_ttl_seconds: float = 300
    distributed_endpoint: str | None = None
    distributed_timeout_millis: int = 250
    key_prefix: str = "tiercache"
    failure_threshold: int = 3
    reconnect_delay_initial: float = 1.0
    reconnect_delay_max: float = 60.0
    reconnect_delay_multiplier: float = 2.0
    loader_timeout_seconds: float | None = 30.0
    cache_none: bool = False
    sweep_interval_seconds: float = 60.0
    instance_id: str = field(default_factory=lambda: str(uuid4())[:8])
    enable_invalidation_broadcast: bool = True
    invalidation_channel: str = INVALIDATION_CHANNEL

    @classmethod
    def from_settings(cls) -> "CacheConfig":
        """Create config from application settings."""
        return cls(
            local_capacity=settings.local_capacity,
            default_ttl_seconds=settings.default_ttl_seconds,
            distributed_endpoint=settings.distributed_endpoint,
            distributed_timeout_millis=settings.distributed_timeout_millis,
            key_prefix=settings.redis_key_prefix,
            failure_threshold=settings.redis_failure_threshold,
            reconnect_delay_initial=settings.redis_reconnect_delay_initial,
            reconnect_delay_max=settings.redis_reconnect_delay_max,
            reconnect_delay_multiplier=settings.redis_reconnect_delay_multiplier,
            loader_timeout_seconds=settings.loader_timeout_seconds,
            cache_none=settings.cache_none,
            sweep_interval_seconds=settings.local_sweep_interval_seconds,
            instance_id=settings.instance_id,
            enable_invalidation_broadcast=settings.enable_invalidation_broadcast,
            invalidation_channel=settings.invalidation_channel,
        )

    def validate(self) -> None:
        """Raise ConfigurationError for values that cannot work at runtime."""
        if self.local_capacity < 0:
            raise ConfigurationError(f"local_capacity must be >= 0, got {self.local_capacity}")
        if self.default_ttl_seconds < 0:
            raise ConfigurationError(
                f"default_ttl_seconds must be >= 0, got {self.default_ttl_seconds}"
            )
        if self.distributed_timeout_millis <= 0:
            raise ConfigurationError(
                f"distributed_timeout_millis must be > 0, got {self.distributed_timeout_millis}"
            )
        if self.loader_timeout_seconds is not None and self.loader_timeout_seconds <= 0:
            raise ConfigurationError("loader_timeout_seconds must be > 0 when set")
        if self.sweep_interval_seconds < 0:
            raise ConfigurationError("sweep_interval_seconds must be >= 0")
        if not self.key_prefix:
            raise ConfigurationError("key_prefix must not be empty")


class CacheOrchestrator:
    """Two-tier cache-aside cache with single-flight loading.

    Args:
        config: Capacity, TTL and distributed-tier options.
        local: Pre-built local tier; built from config when omitted.
        distributed: Pre-built distributed tier; built from
            config.distributed_endpoint when omitted. With neither the cache
            runs local-only.
        metrics: Counter sink; a fresh one is created when omitted.
        clock: Monotonic time source shared by the tiers.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        local: CacheBackend | None = None,
        distributed: CacheBackend | None = None,
        metrics: CacheMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self.config.validate()

        self.metrics = metrics or CacheMetrics()
        self._clock = clock

        if local is None:
            local = LocalCache(
                capacity=self.config.local_capacity,
                default_ttl=self.config.default_ttl_seconds,
                clock=clock,
                metrics=self.metrics,
            )
        if distributed is None and self.config.distributed_endpoint:
            distributed = RedisCache(
                url=self.config.distributed_endpoint,
                key_prefix=self.config.key_prefix,
                default_ttl=self.config.default_ttl_seconds,
                timeout=self.config.distributed_timeout_millis / 1000,
                failure_threshold=self.config.failure_threshold,
                reconnect_delay_initial=self.config.reconnect_delay_initial,
                reconnect_delay_max=self.config.reconnect_delay_max,
                reconnect_delay_multiplier=self.config.reconnect_delay_multiplier,
                clock=clock,
                metrics=self.metrics,
            )

        self.local = local
        self.distributed = distributed
        self._tiers: list[CacheBackend] = [local]
        if distributed is not None:
            self._tiers.append(distributed)

        self.router = InvalidationRouter(local, distributed)
        self._flight = SingleFlight()
        self._tracer = get_tracer(__name__)
        self._sweep_task: asyncio.Task[None] | None = None
        self._broadcaster: InvalidationBroadcaster | None = None

    @classmethod
    def from_settings(cls) -> "CacheOrchestrator":
        return cls(CacheConfig.from_settings())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Connect the distributed tier and start background tasks."""
        if isinstance(self.distributed, RedisCache):
            await self.distributed.connect()
            client = self.distributed.client
            if self.config.enable_invalidation_broadcast and client is not None:
                self._broadcaster = InvalidationBroadcaster(
                    client,
                    instance_id=self.config.instance_id,
                    channel=self.config.invalidation_channel,
                    timeout=self.distributed.timeout,
                )
                self._broadcaster.add_handler(self.router.apply)
                self._broadcaster.add_resubscribe_handler(self.router.flush_local)
                self.router.broadcaster = self._broadcaster
                await self._broadcaster.start()

        if (
            self.config.sweep_interval_seconds > 0
            and isinstance(self.local, LocalCache)
            and self._sweep_task is None
        ):
            self._sweep_task = asyncio.create_task(self._sweep_loop())

        logger.info(
            f"Cache started: local capacity {self.config.local_capacity}, "
            f"distributed {'enabled' if self.distributed is not None else 'disabled'}"
        )

    async def stop(self) -> None:
        """Stop background tasks and close the distributed tier."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        if self._broadcaster is not None:
            await self._broadcaster.stop()
            self.router.broadcaster = None
            self._broadcaster = None

        if self.distributed is not None:
            await self.distributed.close()

        logger.info("Cache stopped")

    async def __aenter__(self) -> "CacheOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        """Periodically drop expired local entries."""
        assert isinstance(self.local, LocalCache)
        while True:
            try:
                await asyncio.sleep(self.config.sweep_interval_seconds)
                purged = self.local.purge_expired()
                if purged:
                    logger.debug(f"Swept {purged} expired local entries")
            except asyncio.CancelledError:
                break

    # -------------------------------------------------------------------------
    # Reads and writes
    # -------------------------------------------------------------------------

    def _resolve_ttl(self, ttl: float | None) -> float:
        if ttl is None:
            return self.config.default_ttl_seconds
        if ttl < 0:
            raise ValueError(f"TTL must be >= 0, got {ttl}")
        return ttl

    async def _lookup(self, key: str) -> CacheEntry | None:
        """Walk the tier chain, promoting a lower-tier hit upwards.

        The promotion is skipped when an invalidation ran while the lower
        tier was being read; the fetched value may be the one it removed.
        """
        generation = self.router.generation
        for index, tier in enumerate(self._tiers):
            entry = await tier.get(key)
            if entry is None:
                self.metrics.miss(tier.name)
                continue

            self.metrics.hit(tier.name)
            self.metrics.hit("orchestrator")
            if index:
                remaining = entry.remaining_ttl(self._clock())
                ttl = self.config.default_ttl_seconds if remaining is None else remaining
                if ttl > 0 and self.router.generation == generation:
                    for upper in self._tiers[:index]:
                        await upper.set(key, entry.value, ttl)
            return entry

        self.metrics.miss("orchestrator")
        return None

    async def get(self, key: str) -> Any | None:
        """Return the cached value for ``key``, or None when absent."""
        entry = await self._lookup(key)
        return entry.value if entry is not None else None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Write ``value`` to every tier. The distributed write is best-effort."""
        ttl = self._resolve_ttl(ttl)
        tags = tuple(tags)
        for tier in self._tiers:
            await tier.set(key, value, ttl, tags)

    async def get_or_set(
        self,
        key: str,
        loader: Loader,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value, computing it with ``loader`` on a miss.

        Concurrent callers missing on the same key share one loader run and
        observe the same value or the same LoaderError. A failed load caches
        nothing.

        ``loader`` may be a coroutine function or a plain callable; plain
        callables run on the event loop, so blocking work belongs in
        asyncio.to_thread inside the loader.

        Raises:
            LoaderError: The loader raised or exceeded loader_timeout_seconds.
        """
        ttl = self._resolve_ttl(ttl)
        tags = tuple(tags)

        entry = await self._lookup(key)
        if entry is not None and (entry.value is not None or self.config.cache_none):
            return entry.value

        value, shared = await self._flight.do(
            key, lambda: self._load(key, loader, ttl, tags)
        )
        if shared:
            logger.debug(f"Served '{key}' from a coalesced load")
        return value

    async def _load(
        self,
        key: str,
        loader: Loader,
        ttl: float,
        tags: tuple[str, ...],
    ) -> Any:
        # A load that finished between our miss and this flight already
        # populated the local tier.
        entry = await self.local.get(key)
        if entry is not None and (entry.value is not None or self.config.cache_none):
            return entry.value

        self.metrics.loader_invocation()
        with (
            LogContext(cache_key=key),
            self._tracer.start_as_current_span("tiercache.load") as span,
        ):
            span.set_attribute("cache.key", key)
            try:
                result = loader()
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, self.config.loader_timeout_seconds)
            except Exception as e:
                self.metrics.loader_error()
                span.record_exception(e)
                logger.warning(f"Loader for '{key}' failed: {e!r}")
                raise LoaderError(key, e) from e

            if result is not None or self.config.cache_none:
                await self.set(key, result, ttl, tags)
        return result

    # -------------------------------------------------------------------------
    # Bulk operations
    # -------------------------------------------------------------------------

    async def mget(self, *keys: str) -> list[Any | None]:
        """Get several keys concurrently; absent keys yield None."""
        return list(await asyncio.gather(*(self.get(key) for key in keys)))

    async def mset(self, entries: Iterable[Mapping[str, Any]]) -> None:
        """Set several entries, each a mapping with key, value and optional ttl/tags."""
        await asyncio.gather(
            *(
                self.set(entry["key"], entry["value"], entry.get("ttl"), entry.get("tags", ()))
                for entry in entries
            )
        )

    async def mdel(self, *keys: str) -> None:
        await self.router.delete_many(keys)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def delete(self, key: str) -> None:
        await self.router.delete(key)

    async def delete_pattern(self, prefix: str) -> None:
        """Delete every key starting with ``prefix`` (a trailing ``*`` is allowed)."""
        await self.router.delete_pattern(prefix)

    async def invalidate_tags(self, tags: Iterable[str]) -> set[str]:
        return await self.router.invalidate_tags(tags)

    async def clear(self) -> None:
        await self.router.clear()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Counters and tier state for dashboards and health endpoints."""
        local: dict[str, Any] = {"capacity": self.config.local_capacity}
        if isinstance(self.local, LocalCache):
            local["size"] = len(self.local)
            local["size_hint_bytes"] = self.local.size_hint()

        distributed: dict[str, Any] = {"enabled": self.distributed is not None}
        if isinstance(self.distributed, RedisCache):
            distributed["state"] = self.distributed.state.value

        return {
            "instance_id": self.config.instance_id,
            "counters": self.metrics.snapshot(),
            "hit_rate": round(self.metrics.hit_rate(), 4),
            "in_flight": len(self._flight),
            "local": local,
            "distributed": distributed,
        }
