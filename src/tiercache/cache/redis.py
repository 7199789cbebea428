"""Redis tier for tiercache.

Provides the shared, network-addressable second tier. The tier is an
optimization, never a source of truth, so every operation fails soft:

- get() returns None on timeout, connection or decode failure
- set(), delete() and the pattern/tag deletes log and return

Each call is bounded by ``timeout`` via asyncio.wait_for on top of the
client's socket timeouts. After ``failure_threshold`` consecutive failures the
tier is marked unavailable; calls short-circuit without touching the network
and a background task reconnects with exponential backoff.

Values are serialized with orjson. Keys are namespaced under ``key_prefix``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar, cast

import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError

from tiercache.cache.backend import CacheEntry, normalize_prefix, resolve_ttl
from tiercache.cache.keys import CacheKeys
from tiercache.errors import ConfigurationError, DistributedUnavailable, SerializationError

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from tiercache.observability.metrics import CacheMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = 300
DEFAULT_TIMEOUT = 0.25
DEFAULT_PATTERN_TIMEOUT = 5.0
SCAN_BATCH_SIZE = 500
# Tag sets outlive their members so tag invalidation still finds them
TAG_TTL_FLOOR = 86400

_GLOB_SPECIAL = str.maketrans({c: f"\\{c}" for c in "\\*?[]"})


class RedisConnectionState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def _default(obj: Any) -> Any:
    """orjson fallback for pydantic models and sets."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def serialize(value: Any) -> bytes:
    """Encode a value for storage in Redis."""
    try:
        return orjson.dumps(value, default=_default)
    except TypeError as e:
        raise SerializationError(str(e)) from e


def deserialize(payload: bytes) -> Any:
    """Decode a value read from Redis."""
    try:
        return orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        raise SerializationError(str(e)) from e


class RedisCache:
    """Fail-soft Redis tier.

    Args:
        url: Redis URL carrying host, port and credentials.
        key_prefix: Namespace prepended to every key.
        default_ttl: TTL in seconds used when a write passes ttl=None.
        timeout: Per-call timeout in seconds.
        failure_threshold: Consecutive failures before the tier is marked
            unavailable and handed to the background reconnect loop.
        client: Pre-built client (tests, shared pools). Not closed by close().
        clock: Time source used to express server TTLs as absolute expiry.
    """

    name = "distributed"
    supports_pattern = True

    def __init__(
        self,
        url: str | None = None,
        key_prefix: str = "tiercache",
        default_ttl: float = DEFAULT_TTL,
        timeout: float = DEFAULT_TIMEOUT,
        failure_threshold: int = 3,
        reconnect_delay_initial: float = 1.0,
        reconnect_delay_max: float = 60.0,
        reconnect_delay_multiplier: float = 2.0,
        pattern_timeout: float = DEFAULT_PATTERN_TIMEOUT,
        client: Redis | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: CacheMetrics | None = None,
    ):
        if url is None and client is None:
            raise ConfigurationError("RedisCache needs either a url or a client")
        if timeout <= 0:
            raise ConfigurationError(f"Distributed timeout must be > 0, got {timeout}")
        if default_ttl < 0:
            raise ConfigurationError(f"Default TTL must be >= 0, got {default_ttl}")
        if failure_threshold < 1:
            raise ConfigurationError("Failure threshold must be >= 1")

        self.url = url
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self.timeout = timeout
        self.pattern_timeout = pattern_timeout
        self.failure_threshold = failure_threshold
        self.reconnect_delay_initial = reconnect_delay_initial
        self.reconnect_delay_max = reconnect_delay_max
        self.reconnect_delay_multiplier = reconnect_delay_multiplier

        self._client: Redis | None = client
        self._owns_client = client is None
        self._clock = clock
        self._metrics = metrics
        self._state = RedisConnectionState.DISCONNECTED
        self._consecutive_failures = 0
        self._current_delay = reconnect_delay_initial
        self._reconnect_task: asyncio.Task[None] | None = None
        self._shutdown_event = asyncio.Event()

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    @property
    def state(self) -> RedisConnectionState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state == RedisConnectionState.CONNECTED

    @property
    def client(self) -> Redis | None:
        return self._client

    def _get_client(self) -> Redis:
        if self._client is None:
            self._client = redis.from_url(  # type: ignore[no-untyped-call]
                cast(str, self.url),
                decode_responses=False,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                health_check_interval=30,
            )
        return self._client

    async def connect(self) -> bool:
        """Establish the connection once.

        On failure the background reconnect loop is started and False is
        returned; the caller keeps running local-only meanwhile.
        """
        if self._state == RedisConnectionState.CONNECTED:
            return True
        if self._state == RedisConnectionState.CLOSED:
            return False

        self._state = RedisConnectionState.CONNECTING
        if await self._ping():
            self._mark_connected()
            logger.info(f"Connected to Redis cache tier (prefix '{self.key_prefix}')")
            return True

        logger.warning("Redis cache tier unavailable, running local-only until it recovers")
        self._start_reconnect()
        return False

    async def _ping(self) -> bool:
        try:
            client = self._get_client()
            await asyncio.wait_for(cast(Awaitable[bool], client.ping()), self.timeout)
            return True
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    def _mark_connected(self) -> None:
        self._state = RedisConnectionState.CONNECTED
        self._consecutive_failures = 0
        self._current_delay = self.reconnect_delay_initial

    def _start_reconnect(self) -> None:
        if self._shutdown_event.is_set():
            return
        self._state = RedisConnectionState.RECONNECTING
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Background task for reconnection with exponential backoff."""
        attempts = 0
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self._current_delay)
                attempts += 1
                if await self._ping():
                    self._mark_connected()
                    logger.info(f"Reconnected to Redis cache tier after {attempts} attempt(s)")
                    return

                self._current_delay = min(
                    self._current_delay * self.reconnect_delay_multiplier,
                    self.reconnect_delay_max,
                )
                logger.debug(
                    f"Reconnect attempt {attempts} failed, retrying in {self._current_delay:.1f}s"
                )
            except asyncio.CancelledError:
                break

    def _available(self) -> bool:
        """Whether requests may touch the network right now.

        A never-connected tier kicks off the background connect instead of
        connecting on the request path.
        """
        if self._state == RedisConnectionState.CONNECTED:
            return True
        if self._state == RedisConnectionState.DISCONNECTED:
            self._start_reconnect()
        return False

    async def close(self) -> None:
        """Stop reconnecting and release the connection pool."""
        self._shutdown_event.set()

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass

        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._client = None

        self._state = RedisConnectionState.CLOSED

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        return await self._ping()

    # -------------------------------------------------------------------------
    # Call wrapper
    # -------------------------------------------------------------------------

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def _run(
        self,
        operation: str,
        func: Callable[[Redis], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run one bounded call against Redis.

        Raises DistributedUnavailable for timeouts and connection errors; the
        public methods absorb it.
        """
        if not self._available():
            raise DistributedUnavailable(f"Redis tier is {self._state.value}")

        client = self._get_client()
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(func(client), timeout or self.timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            self._record_failure(operation, e)
            raise DistributedUnavailable(f"Redis {operation} failed: {e!r}") from e

        self._consecutive_failures = 0
        if self._metrics is not None:
            self._metrics.observe(operation, self.name, time.perf_counter() - start)
        return result

    def _record_failure(self, operation: str, error: BaseException) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures == 1:
            logger.warning(f"Redis {operation} failed, treating as miss: {error!r}")
        else:
            logger.debug(f"Redis {operation} failed again: {error!r}")

        if (
            self._consecutive_failures >= self.failure_threshold
            and self._state == RedisConnectionState.CONNECTED
        ):
            logger.warning(
                f"Redis tier unavailable after {self._consecutive_failures} consecutive "
                f"failures, reconnecting in background"
            )
            self._start_reconnect()

    # -------------------------------------------------------------------------
    # Tier operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> CacheEntry | None:
        """Get a cached value. Never raises."""

        async def _get(client: Redis) -> list[Any]:
            async with client.pipeline(transaction=False) as pipe:
                pipe.get(self._key(key))
                pipe.pttl(self._key(key))
                return cast(list[Any], await pipe.execute())

        try:
            payload, pttl = await self._run("get", _get)
            if payload is None:
                return None
            value = deserialize(payload)
        except SerializationError as e:
            logger.warning(f"Discarding undecodable Redis entry '{key}': {e}")
            await self.delete(key)
            return None
        except DistributedUnavailable:
            return None

        expires_at = self._clock() + pttl / 1000 if pttl is not None and pttl >= 0 else None
        return CacheEntry(key=key, value=value, expires_at=expires_at, size_hint=len(payload))

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Cache a value. Fire-and-log on failure."""
        ttl = resolve_ttl(ttl, self.default_ttl)
        try:
            payload = serialize(value)
        except SerializationError as e:
            logger.warning(f"Skipping Redis write for '{key}', value not serializable: {e}")
            return

        ttl_ms = int(ttl * 1000) if ttl is not None else None
        tag_list = list(tags)

        async def _set(client: Redis) -> None:
            async with client.pipeline(transaction=False) as pipe:
                pipe.set(self._key(key), payload, px=ttl_ms)
                for tag in tag_list:
                    tag_key = CacheKeys.tag(self.key_prefix, tag)
                    pipe.sadd(tag_key, key)
                    if ttl is None:
                        pipe.persist(tag_key)
                    else:
                        pipe.expire(tag_key, max(int(ttl) + 1, TAG_TTL_FLOOR))
                await pipe.execute()

        try:
            await self._run("set", _set)
        except DistributedUnavailable:
            pass

    async def delete(self, key: str) -> None:
        """Delete a cached value. Fire-and-log on failure."""
        try:
            await self._run("delete", lambda client: client.delete(self._key(key)))
        except DistributedUnavailable:
            pass

    async def delete_many(self, keys: Iterable[str]) -> int:
        names = [self._key(key) for key in keys]
        if not names:
            return 0
        try:
            return cast(int, await self._run("delete", lambda client: client.delete(*names)))
        except DistributedUnavailable:
            return 0

    async def delete_pattern(self, prefix: str) -> int:
        """Delete every key starting with ``prefix`` using SCAN + DEL.

        SCAN avoids blocking the server on large keyspaces. Returns the number
        of keys deleted, 0 when the tier is unavailable.
        """
        match = self._key(normalize_prefix(prefix)).translate(_GLOB_SPECIAL) + "*"
        try:
            return await self._run(
                "delete_pattern",
                lambda client: self._scan_delete(client, match),
                timeout=self.pattern_timeout,
            )
        except DistributedUnavailable:
            logger.warning(
                f"Could not delete Redis keys under '{prefix}', they will expire by TTL"
            )
            return 0

    async def _scan_delete(self, client: Redis, match: str) -> int:
        deleted = 0
        batch: list[Any] = []
        async for name in client.scan_iter(match=match, count=SCAN_BATCH_SIZE):
            batch.append(name)
            if len(batch) >= SCAN_BATCH_SIZE:
                deleted += await client.delete(*batch)
                batch = []
        if batch:
            deleted += await client.delete(*batch)
        return deleted

    async def delete_tags(self, tags: Iterable[str]) -> set[str]:
        """Delete every key recorded under any of ``tags``; return those keys."""
        tags = list(tags)
        tag_keys = [CacheKeys.tag(self.key_prefix, tag) for tag in tags]
        if not tag_keys:
            return set()

        async def _delete_tags(client: Redis) -> set[str]:
            keys: set[str] = set()
            for tag_key in tag_keys:
                members = await cast(Awaitable[set[bytes]], client.smembers(tag_key))
                keys |= {m.decode() if isinstance(m, bytes) else m for m in members}
            names = [self._key(key) for key in keys]
            await client.delete(*names, *tag_keys)
            return keys

        try:
            return await self._run("delete_tags", _delete_tags, timeout=self.pattern_timeout)
        except DistributedUnavailable:
            logger.warning(f"Could not invalidate Redis tags {sorted(tags)}, relying on TTL")
            return set()

    async def clear(self) -> None:
        """Delete every key under this cache's prefix."""
        match = f"{self.key_prefix}:".translate(_GLOB_SPECIAL) + "*"
        try:
            deleted = await self._run(
                "clear",
                lambda client: self._scan_delete(client, match),
                timeout=self.pattern_timeout,
            )
            logger.info(f"Cleared {deleted} Redis cache keys under '{self.key_prefix}'")
        except DistributedUnavailable:
            logger.warning("Could not clear Redis cache tier, entries will expire by TTL")
