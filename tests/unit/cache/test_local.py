"""Tests for the in-process LRU tier."""

from __future__ import annotations

from typing import Any

import pytest

from tiercache.cache.local import LocalCache
from tiercache.errors import ConfigurationError
from tiercache.observability.metrics import CacheMetrics


class TestConstruction:
    """Tests for LocalCache construction."""

    def test_negative_capacity_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            LocalCache(capacity=-1)

    def test_negative_default_ttl_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            LocalCache(default_ttl=-5)

    @pytest.mark.asyncio
    async def test_zero_capacity_disables_tier(self) -> None:
        """Every get misses and writes are dropped."""
        cache = LocalCache(capacity=0)
        await cache.set("a", 1)

        assert not cache.enabled
        assert await cache.get("a") is None
        assert len(cache) == 0


class TestReadsAndWrites:
    """Tests for get and set."""

    @pytest.mark.asyncio
    async def test_get_missing_key(self) -> None:
        cache = LocalCache(capacity=4)
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("state:institution:1", {"name": "North"})

        entry = await cache.get("state:institution:1")
        assert entry is not None
        assert entry.value == {"name": "North"}

    @pytest.mark.asyncio
    async def test_repeated_hits_return_same_value(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("k", [1, 2, 3])

        first = await cache.get("k")
        second = await cache.get("k")
        assert first is not None and second is not None
        assert first.value == second.value == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_overwrite_replaces_value(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("k", 1)
        await cache.set("k", 2)

        entry = await cache.get("k")
        assert entry is not None
        assert entry.value == 2
        assert len(cache) == 1


class TestExpiry:
    """Tests for TTL handling."""

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, clock: Any) -> None:
        cache = LocalCache(capacity=4, clock=clock)
        await cache.set("k", "v", ttl=10)

        clock.advance(9)
        assert await cache.get("k") is not None

        clock.advance(1)
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_default_ttl_used_when_none(self, clock: Any) -> None:
        cache = LocalCache(capacity=4, default_ttl=30, clock=clock)
        await cache.set("k", "v")

        entry = await cache.get("k")
        assert entry is not None
        assert entry.expires_at == clock() + 30

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, clock: Any) -> None:
        cache = LocalCache(capacity=4, clock=clock)
        await cache.set("k", "v", ttl=0)

        clock.advance(10**9)
        entry = await cache.get("k")
        assert entry is not None
        assert entry.expires_at is None

    @pytest.mark.asyncio
    async def test_negative_ttl_rejected(self) -> None:
        cache = LocalCache(capacity=4)
        with pytest.raises(ValueError):
            await cache.set("k", "v", ttl=-1)

    @pytest.mark.asyncio
    async def test_purge_expired(self, clock: Any) -> None:
        """Sweeping removes expired entries without a get."""
        cache = LocalCache(capacity=4, clock=clock)
        await cache.set("short", 1, ttl=5)
        await cache.set("long", 2, ttl=50)

        clock.advance(10)
        assert cache.purge_expired() == 1
        assert cache.keys() == ["long"]

    @pytest.mark.asyncio
    async def test_overwrite_restarts_ttl(self, clock: Any) -> None:
        cache = LocalCache(capacity=4, clock=clock)
        await cache.set("k", 1, ttl=10)
        clock.advance(8)
        await cache.set("k", 2, ttl=10)
        clock.advance(8)

        entry = await cache.get("k")
        assert entry is not None
        assert entry.value == 2


class TestEviction:
    """Tests for LRU eviction."""

    @pytest.mark.asyncio
    async def test_capacity_two_scenario(self) -> None:
        """A get refreshes recency, so the untouched key is evicted."""
        cache = LocalCache(capacity=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("a")
        await cache.set("c", 3)

        assert await cache.get("b") is None
        a = await cache.get("a")
        c = await cache.get("c")
        assert a is not None and a.value == 1
        assert c is not None and c.value == 3

    @pytest.mark.asyncio
    async def test_never_exceeds_capacity(self) -> None:
        cache = LocalCache(capacity=3)
        for i in range(10):
            await cache.set(f"k{i}", i)
            assert len(cache) <= 3

        assert cache.keys() == ["k7", "k8", "k9"]

    @pytest.mark.asyncio
    async def test_overwrite_does_not_evict(self) -> None:
        cache = LocalCache(capacity=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("a", 10)

        assert cache.keys() == ["b", "a"]

    @pytest.mark.asyncio
    async def test_evictions_are_counted(self, metrics: CacheMetrics) -> None:
        cache = LocalCache(capacity=1, metrics=metrics)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)

        assert metrics.snapshot()["local"]["evictions"] == 2

    @pytest.mark.asyncio
    async def test_expired_entries_still_count_towards_capacity(self, clock: Any) -> None:
        """Expiry and eviction are independent."""
        cache = LocalCache(capacity=2, clock=clock)
        await cache.set("old", 1, ttl=1)
        await cache.set("fresh", 2, ttl=100)
        clock.advance(5)
        await cache.set("new", 3, ttl=100)

        assert cache.keys() == ["fresh", "new"]


class TestInvalidation:
    """Tests for delete, prefix and tag invalidation."""

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("k", 1)
        await cache.delete("k")
        await cache.delete("never-set")

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_many(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("a", 1)
        await cache.set("b", 2)

        assert await cache.delete_many(["a", "b", "c"]) == 2
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_delete_pattern_matches_prefix_only(self) -> None:
        cache = LocalCache(capacity=8)
        await cache.set("batches:institution:1", 1)
        await cache.set("batches:institution:2", 2)
        await cache.set("batches:region:1", 3)
        await cache.set("state:institution:1", 4)

        assert await cache.delete_pattern("batches:institution:") == 2
        assert sorted(cache.keys()) == ["batches:region:1", "state:institution:1"]

    @pytest.mark.asyncio
    async def test_delete_pattern_accepts_trailing_wildcard(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("batches:institution:1", 1)

        assert await cache.delete_pattern("batches:*") == 1

    @pytest.mark.asyncio
    async def test_delete_pattern_rejects_empty_prefix(self) -> None:
        """A blank pattern never flushes the tier."""
        cache = LocalCache(capacity=4)
        await cache.set("k", 1)

        with pytest.raises(ValueError):
            await cache.delete_pattern("*")
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_delete_tags(self) -> None:
        cache = LocalCache(capacity=8)
        await cache.set("a", 1, tags=["institutions"])
        await cache.set("b", 2, tags=["institutions", "stats"])
        await cache.set("c", 3, tags=["stats"])
        await cache.set("d", 4)

        removed = await cache.delete_tags(["institutions"])
        assert removed == {"a", "b"}
        assert sorted(cache.keys()) == ["c", "d"]

    @pytest.mark.asyncio
    async def test_overwrite_drops_old_tags(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("a", 1, tags=["institutions"])
        await cache.set("a", 2)

        assert await cache.delete_tags(["institutions"]) == set()
        assert await cache.get("a") is not None

    @pytest.mark.asyncio
    async def test_evicted_keys_leave_tag_index(self) -> None:
        cache = LocalCache(capacity=1)
        await cache.set("a", 1, tags=["t"])
        await cache.set("b", 2)

        assert await cache.delete_tags(["t"]) == set()

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        cache = LocalCache(capacity=4)
        await cache.set("a", 1, tags=["t"])
        await cache.clear()

        assert len(cache) == 0
        assert await cache.delete_tags(["t"]) == set()
