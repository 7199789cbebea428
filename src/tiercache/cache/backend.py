"""Tier interface shared by the local and distributed caches.

The orchestrator walks an ordered chain of backends (local first, then
distributed). Each backend owns the entries it stores; values are never
shared by reference across tiers.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class CacheEntry:
    """A value held by one tier.

    expires_at is an absolute timestamp on the tier's clock, or None when the
    entry never expires. For the distributed tier it is derived from the
    remaining TTL reported by the server.
    """

    key: str
    value: Any
    expires_at: float | None
    size_hint: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def remaining_ttl(self, now: float) -> float | None:
        """Seconds until expiry, or None for entries without one."""
        if self.expires_at is None:
            return None
        return max(self.expires_at - now, 0.0)


@runtime_checkable
class CacheBackend(Protocol):
    """Operations every cache tier provides."""

    name: str
    supports_pattern: bool

    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_many(self, keys: Iterable[str]) -> int: ...

    async def delete_pattern(self, prefix: str) -> int: ...

    async def delete_tags(self, tags: Iterable[str]) -> set[str]: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...


def normalize_prefix(prefix: str) -> str:
    """Turn ``"ns:entity:*"`` or ``"ns:entity:"`` into the bare prefix.

    An empty prefix is rejected so that a blank pattern can never flush a
    whole tier; use clear() for that.
    """
    cleaned = prefix.strip().rstrip("*")
    if not cleaned:
        raise ValueError("Invalidation prefix must not be empty")
    return cleaned


def resolve_ttl(ttl: float | None, default_ttl: float) -> float | None:
    """Resolve a per-call TTL against a tier default.

    None selects the default, 0 means the entry never expires, and a
    negative TTL is a programming error.
    """
    if ttl is None:
        ttl = default_ttl
    if ttl < 0:
        raise ValueError(f"TTL must be >= 0, got {ttl}")
    return ttl or None
