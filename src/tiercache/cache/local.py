"""In-process bounded LRU cache.

The first tier of the chain. Entries live in an OrderedDict whose order is
the recency order: the first item is the least recently used. Hits move an
entry to the end; inserts past capacity pop from the front.

Expiry is evaluated lazily on get() and actively by purge_expired(), which the
orchestrator runs on an interval. Expiry and LRU eviction are independent.

A single threading.Lock guards the entry map, the recency order and the tag
index. Every method holds it only for the map updates themselves, so the
lock is never held across an await.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from tiercache.cache.backend import CacheEntry, normalize_prefix, resolve_ttl
from tiercache.errors import ConfigurationError

if TYPE_CHECKING:
    from tiercache.observability.metrics import CacheMetrics

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10_000
DEFAULT_TTL = 300


class LocalCache:
    """Capacity-limited LRU cache with per-entry TTL.

    Args:
        capacity: Maximum number of entries. 0 disables the tier: every get
            is a miss and writes are dropped.
        default_ttl: TTL in seconds used when a write passes ttl=None.
        clock: Monotonic time source, injectable for tests.
        metrics: Optional sink receiving eviction counts.
    """

    name = "local"
    supports_pattern = True

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        metrics: CacheMetrics | None = None,
    ):
        if capacity < 0:
            raise ConfigurationError(f"Local capacity must be >= 0, got {capacity}")
        if default_ttl < 0:
            raise ConfigurationError(f"Default TTL must be >= 0, got {default_ttl}")

        self.capacity = capacity
        self.default_ttl = default_ttl
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self._key_tags: dict[str, frozenset[str]] = {}

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[str]:
        """Keys in recency order, least recently used first."""
        with self._lock:
            return list(self._entries)

    # -------------------------------------------------------------------------
    # Reads and writes
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for ``key`` and mark it most recently used."""
        if not self.enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._remove_locked(key)
                return None
            self._entries.move_to_end(key)
            return entry

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Insert or overwrite ``key``, evicting LRU entries past capacity."""
        if not self.enabled:
            return

        ttl = resolve_ttl(ttl, self.default_ttl)
        tag_set = frozenset(tags)

        with self._lock:
            expires_at = self._clock() + ttl if ttl is not None else None
            entry = CacheEntry(
                key=key,
                value=value,
                expires_at=expires_at,
                size_hint=sys.getsizeof(value),
            )
            if key in self._entries:
                self._remove_locked(key)
            self._entries[key] = entry
            if tag_set:
                self._key_tags[key] = tag_set
                for tag in tag_set:
                    self._tags.setdefault(tag, set()).add(key)

            evicted = 0
            while len(self._entries) > self.capacity:
                oldest = next(iter(self._entries))
                self._remove_locked(oldest)
                evicted += 1

        if evicted:
            logger.debug(f"Evicted {evicted} least recently used entries")
            if self._metrics is not None:
                self._metrics.eviction(self.name, evicted)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def delete(self, key: str) -> None:
        with self._lock:
            self._remove_locked(key)

    async def delete_many(self, keys: Iterable[str]) -> int:
        with self._lock:
            return sum(1 for key in keys if self._remove_locked(key))

    async def delete_pattern(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``. O(n) in current size."""
        prefix = normalize_prefix(prefix)
        with self._lock:
            matching = [key for key in self._entries if key.startswith(prefix)]
            for key in matching:
                self._remove_locked(key)
        return len(matching)

    async def delete_tags(self, tags: Iterable[str]) -> set[str]:
        """Remove every key labelled with any of ``tags``; return those keys."""
        with self._lock:
            keys: set[str] = set()
            for tag in tags:
                keys |= self._tags.get(tag, set())
            for key in keys:
                self._remove_locked(key)
        return keys

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tags.clear()
            self._key_tags.clear()

    async def close(self) -> None:
        await self.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove_locked(key)
        return len(expired)

    def size_hint(self) -> int:
        """Approximate memory held by cached values, in bytes."""
        with self._lock:
            return sum(entry.size_hint for entry in self._entries.values())

    def _remove_locked(self, key: str) -> bool:
        """Remove ``key`` and its tag memberships. Caller holds the lock."""
        if self._entries.pop(key, None) is None:
            return False
        for tag in self._key_tags.pop(key, ()):
            members = self._tags.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tags[tag]
        return True
