"""Error taxonomy for the cache layer.

Only LoaderError crosses the public boundary of the orchestrator. Tier-level
faults (DistributedUnavailable, SerializationError) are absorbed by the tier
that raised them and degrade to a miss or a skipped write. ConfigurationError
is raised at construction time only.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base class for cache layer errors."""


class ConfigurationError(CacheError):
    """Invalid capacity, TTL or timeout supplied at construction."""


class LoaderError(CacheError):
    """The wrapped computation failed.

    The same instance is delivered to the caller that ran the loader and to
    every caller coalesced onto the same in-flight request. The original
    exception is available as ``cause`` and as ``__cause__``.
    """

    def __init__(self, key: str, cause: BaseException):
        self.key = key
        self.cause = cause
        super().__init__(f"Loader for cache key '{key}' failed: {cause!r}")


class DistributedUnavailable(CacheError):
    """The distributed tier timed out or could not be reached."""


class SerializationError(DistributedUnavailable):
    """A value could not be encoded for, or decoded from, the distributed tier."""
