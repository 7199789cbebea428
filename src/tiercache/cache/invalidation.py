"""Invalidation routing across both tiers and across instances.

InvalidationRouter fans an exact-key, prefix or tag invalidation out to the
distributed tier and then the local tier. Every invalidation also advances
InvalidationRouter.generation before touching a tier; a read that fetched a
value from the distributed tier promotes it into the local tier only if the
generation is unchanged, so an invalidation racing the read cannot be undone
by the promotion.

Other instances keep their own local tiers. InvalidationBroadcaster publishes
every invalidation on a Redis Pub/Sub channel; each instance applies messages
from other instances to its local tier only.

Example:
    router = InvalidationRouter(local, distributed, broadcaster)
    await router.delete_pattern("batches:institution:")
    await router.invalidate_tags(["institutions"])

Known staleness windows:
- A loader that completes after a delete re-populates the value it computed,
  which may predate the delete. This lasts at most one TTL.
- A prefix delete against a backend without pattern support leaves the
  distributed entries to expire by TTL.
- Messages published while an instance is unsubscribed are lost; the
  instance flushes its local tier when it resubscribes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, cast

import orjson
from redis.exceptions import RedisError

from tiercache.cache.backend import CacheBackend, normalize_prefix

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

# Pub/Sub channel name
INVALIDATION_CHANNEL = "tiercache:invalidation"


class InvalidationType(str, Enum):
    """Type of cache invalidation."""

    KEY = "key"
    PREFIX = "prefix"
    TAGS = "tags"
    ALL = "all"


@dataclass
class InvalidationMessage:
    """Cache invalidation message.

    targets holds keys, prefixes or tags depending on type. keys lists the
    keys a tag invalidation resolved to in the distributed tier, so receivers
    can drop local copies that were promoted without their tags.
    """

    type: InvalidationType
    targets: list[str] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    origin: str = ""

    def to_bytes(self) -> bytes:
        """Serialize to JSON bytes."""
        return orjson.dumps(
            {
                "type": self.type.value,
                "targets": self.targets,
                "keys": self.keys,
                "origin": self.origin,
            }
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "InvalidationMessage":
        """Deserialize from JSON bytes."""
        parsed = orjson.loads(data)
        return cls(
            type=InvalidationType(parsed["type"]),
            targets=list(parsed.get("targets", [])),
            keys=list(parsed.get("keys", [])),
            origin=parsed.get("origin", ""),
        )


# Handler type for invalidation callbacks
InvalidationHandler = Callable[[InvalidationMessage], Awaitable[None]]
ResubscribeHandler = Callable[[], Awaitable[None]]


class InvalidationBroadcaster:
    """Broadcasts and receives invalidation messages via Redis Pub/Sub.

    When started it subscribes to the channel and dispatches messages from
    other instances to the registered handlers. Messages carrying this
    instance's own origin are skipped since they were applied before
    publishing.

    Publishing is fail-soft: if Redis is unreachable the message is dropped
    and other instances converge by TTL.
    """

    def __init__(
        self,
        client: Redis,
        instance_id: str,
        channel: str = INVALIDATION_CHANNEL,
        timeout: float = 0.25,
        retry_delay: float = 1.0,
    ):
        self.client = client
        self.instance_id = instance_id
        self.channel = channel
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._handlers: list[InvalidationHandler] = []
        self._resubscribe_handlers: list[ResubscribeHandler] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._pubsub: PubSub | None = None
        self._subscriptions = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def add_handler(self, handler: InvalidationHandler) -> None:
        """Register a handler for invalidation messages."""
        self._handlers.append(handler)
        handler_name = getattr(handler, "__name__", handler.__class__.__name__)
        logger.info(f"Registered invalidation handler: {handler_name}")

    def add_resubscribe_handler(self, handler: ResubscribeHandler) -> None:
        """Register a callback run after the subscription is re-established."""
        self._resubscribe_handlers.append(handler)

    async def start(self) -> None:
        """Start listening for invalidation messages."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._listen_loop())
        logger.info(f"Started cache invalidation broadcaster on channel {self.channel}")

    async def stop(self) -> None:
        """Stop listening for invalidation messages."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._close_pubsub()
        logger.info("Stopped cache invalidation broadcaster")

    async def _subscribe(self) -> PubSub:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        self._pubsub = pubsub
        self._subscriptions += 1

        if self._subscriptions > 1:
            logger.info("Resubscribed to invalidation channel, messages may have been missed")
            for handler in self._resubscribe_handlers:
                await handler()
        return pubsub

    async def _close_pubsub(self) -> None:
        if self._pubsub is None:
            return
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing invalidation subscription: {e}")
        self._pubsub = None

    async def _listen_loop(self) -> None:
        """Main loop for receiving invalidation messages."""
        while self._running:
            try:
                pubsub = self._pubsub or await self._subscribe()
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )

                if message is None:
                    continue

                if message["type"] == "message":
                    await self._handle_message(message["data"])

            except asyncio.CancelledError:
                break
            except (RedisError, OSError) as e:
                logger.error(f"Invalidation subscription lost: {e}")
                await self._close_pubsub()
                await asyncio.sleep(self.retry_delay)

    async def _handle_message(self, data: bytes) -> None:
        """Handle an incoming invalidation message."""
        try:
            msg = InvalidationMessage.from_bytes(data)
        except (orjson.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Failed to parse invalidation message: {e}")
            return

        if msg.origin == self.instance_id:
            return

        logger.debug(f"Received invalidation: {msg.type.value} {msg.targets}")
        for handler in self._handlers:
            try:
                await handler(msg)
            except Exception as e:
                logger.error(f"Invalidation handler failed: {e}")

    async def publish(self, message: InvalidationMessage) -> int:
        """Publish an invalidation message to all instances.

        Returns the number of subscribers that received the message, 0 when
        the publish failed.
        """
        message.origin = self.instance_id
        try:
            count = cast(
                int,
                await asyncio.wait_for(
                    self.client.publish(self.channel, message.to_bytes()), self.timeout
                ),
            )
        except (asyncio.TimeoutError, RedisError, OSError) as e:
            logger.warning(f"Failed to publish invalidation {message.type.value}: {e!r}")
            return 0

        logger.debug(
            f"Published invalidation {message.type.value} {message.targets} "
            f"to {count} subscribers"
        )
        return count


class InvalidationRouter:
    """Maps invalidation requests to operations on both tiers.

    Invalidation never waits for an in-flight load of the same key.

    ``generation`` counts invalidations, local and remote. Readers compare it
    before and after a distributed fetch to decide whether promoting the
    fetched value is still safe.
    """

    def __init__(
        self,
        local: CacheBackend,
        distributed: CacheBackend | None = None,
        broadcaster: InvalidationBroadcaster | None = None,
    ):
        self.local = local
        self.distributed = distributed
        self.broadcaster = broadcaster
        self.generation = 0

    async def delete(self, key: str) -> None:
        """Delete from the distributed tier (best-effort), then the local tier."""
        self.generation += 1
        if self.distributed is not None:
            await self.distributed.delete(key)
        await self.local.delete(key)
        await self._publish(InvalidationMessage(type=InvalidationType.KEY, targets=[key]))

    async def delete_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        self.generation += 1
        if self.distributed is not None:
            await self.distributed.delete_many(keys)
        await self.local.delete_many(keys)
        await self._publish(InvalidationMessage(type=InvalidationType.KEY, targets=keys))

    async def delete_pattern(self, prefix: str) -> None:
        """Delete every key under ``prefix`` from both tiers."""
        prefix = normalize_prefix(prefix)
        self.generation += 1

        if self.distributed is not None:
            if self.distributed.supports_pattern:
                deleted = await self.distributed.delete_pattern(prefix)
                logger.debug(f"Deleted {deleted} distributed keys under '{prefix}'")
            else:
                logger.info(
                    f"{self.distributed.name} tier has no pattern delete, entries under "
                    f"'{prefix}' will expire by TTL"
                )

        deleted = await self.local.delete_pattern(prefix)
        logger.debug(f"Deleted {deleted} local keys under '{prefix}'")
        await self._publish(InvalidationMessage(type=InvalidationType.PREFIX, targets=[prefix]))

    async def invalidate_tags(self, tags: Iterable[str]) -> set[str]:
        """Delete every key labelled with any of ``tags``. Returns the keys."""
        tags = list(tags)
        if not tags:
            return set()
        self.generation += 1

        remote_keys: set[str] = set()
        if self.distributed is not None:
            remote_keys = await self.distributed.delete_tags(tags)
        keys = await self.local.delete_tags(tags)
        # Local copies promoted from the distributed tier carry no tags
        await self.local.delete_many(remote_keys)

        await self._publish(
            InvalidationMessage(
                type=InvalidationType.TAGS,
                targets=tags,
                keys=sorted(remote_keys),
            )
        )
        return keys | remote_keys

    async def clear(self) -> None:
        """Empty both tiers."""
        self.generation += 1
        if self.distributed is not None:
            await self.distributed.clear()
        await self.local.clear()
        await self._publish(InvalidationMessage(type=InvalidationType.ALL))

    async def apply(self, message: InvalidationMessage) -> None:
        """Apply an invalidation received from another instance.

        Only the local tier is touched; the sender already handled the
        distributed tier.
        """
        self.generation += 1
        if message.type == InvalidationType.KEY:
            await self.local.delete_many(message.targets)
        elif message.type == InvalidationType.PREFIX:
            for prefix in message.targets:
                await self.local.delete_pattern(prefix)
        elif message.type == InvalidationType.TAGS:
            await self.local.delete_tags(message.targets)
            await self.local.delete_many(message.keys)
        elif message.type == InvalidationType.ALL:
            await self.local.clear()
            logger.info("Cleared local tier on remote request")

    async def flush_local(self) -> None:
        """Drop the local tier after missed invalidations."""
        self.generation += 1
        await self.local.clear()
        logger.info("Flushed local tier after invalidation channel gap")

    async def _publish(self, message: InvalidationMessage) -> None:
        if self.broadcaster is not None and self.broadcaster.is_running:
            await self.broadcaster.publish(message)
