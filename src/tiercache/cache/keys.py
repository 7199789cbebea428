"""Cache key schema for tiercache.

Key format: {namespace}:{entity}:{id}  or  {namespace}:{entity}:{filter_digest}

Where:
- namespace: owning domain area ("state", "principal", "lookup", ...)
- entity: cached entity or view ("institution", "batches", "stats", ...)
- id: identifier of a single entity
- filter_digest: stable digest of the query arguments for list/report views

Keys are hierarchical so that prefix invalidation is well-defined:
    CacheKeys.prefix("batches", "institution")  ->  "batches:institution:"
"""

from __future__ import annotations

import hashlib
from typing import Any

import orjson

SEPARATOR = ":"
DIGEST_LENGTH = 16


class CacheKeys:
    """Cache key generator following a consistent naming convention."""

    # Redis-side namespace for tag sets, outside any domain namespace
    TAG_SEGMENT = "__tag__"

    @classmethod
    def join(cls, *parts: Any) -> str:
        """Join key segments, rendering None as an empty segment."""
        if not parts:
            raise ValueError("At least one key segment is required")
        return SEPARATOR.join("" if part is None else str(part) for part in parts)

    @classmethod
    def entity(cls, namespace: str, entity: str, identifier: Any) -> str:
        """Key for a single entity, e.g. ``state:institution:42``."""
        return cls.join(namespace, entity, identifier)

    @classmethod
    def query(cls, namespace: str, entity: str, filters: dict[str, Any] | None = None) -> str:
        """Key for a filtered list or report view.

        Filters are digested after sorting their keys, so argument order does
        not produce distinct keys for the same logical query.
        """
        return cls.join(namespace, entity, cls.digest(filters))

    @classmethod
    def digest(cls, filters: dict[str, Any] | None) -> str:
        """Stable short digest of a filter mapping."""
        if not filters:
            return "all"
        encoded = orjson.dumps(filters, option=orjson.OPT_SORT_KEYS, default=str)
        return hashlib.sha256(encoded).hexdigest()[:DIGEST_LENGTH]

    @classmethod
    def prefix(cls, namespace: str, *segments: Any) -> str:
        """Invalidation prefix covering every key below the given segments."""
        return cls.join(namespace, *segments) + SEPARATOR

    @classmethod
    def tag(cls, key_prefix: str, tag: str) -> str:
        """Redis key of the set holding every key labelled with ``tag``."""
        return cls.join(key_prefix, cls.TAG_SEGMENT, tag)

    @classmethod
    def parse_key(cls, key: str) -> dict[str, str] | None:
        """Parse a cache key into its components.

        Returns None if the key doesn't have at least three segments.
        """
        parts = key.split(SEPARATOR)
        if len(parts) < 3 or not all(parts[:2]):
            return None

        return {
            "namespace": parts[0],
            "entity": parts[1],
            "id": SEPARATOR.join(parts[2:]),
        }
