"""Single-flight coalescing of concurrent cache misses.

The first caller to miss on a key creates an InFlightRequest and starts the
computation as its own task. Every later caller for the same key attaches to
that task instead of starting another one, so at most one computation per key
runs at a time within the process.

All callers, including the one that created the request, await the task
through asyncio.shield(): a caller that is cancelled detaches without
cancelling the computation or affecting the other waiters.

The registry is owned by one SingleFlight instance. Entries are removed by the
task itself when the computation finishes, in the same step that resolves the
task, whether it succeeded or failed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class InFlightRequest(Generic[T]):
    """A computation in progress for one key."""

    key: str
    future: asyncio.Task[T]
    waiter_count: int = 0


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # All callers may have detached; mark the outcome as retrieved.
    if not task.cancelled():
        task.exception()


class SingleFlight:
    """Registry of in-flight computations keyed by cache key.

    Check-and-create happens without an intervening await, which makes it
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._requests: dict[str, InFlightRequest[Any]] = {}

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, key: object) -> bool:
        return key in self._requests

    def waiters(self) -> dict[str, int]:
        """Number of attached waiters per in-flight key."""
        return {key: request.waiter_count for key, request in self._requests.items()}

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Run ``fn`` once for ``key`` across concurrent callers.

        Returns:
            Tuple of (result, shared) where shared is True when this caller
            attached to a computation started by another caller.

        Raises:
            Whatever ``fn`` raised. Every caller sees the same exception
            instance.
        """
        request = self._requests.get(key)
        shared = request is not None

        if request is None:
            task = asyncio.get_running_loop().create_task(self._execute(key, fn))
            task.add_done_callback(_consume_exception)
            request = InFlightRequest(key=key, future=task)
            self._requests[key] = request
        else:
            request.waiter_count += 1
            logger.debug(f"Coalesced onto in-flight load for '{key}'")

        try:
            return await asyncio.shield(request.future), shared
        finally:
            if shared:
                request.waiter_count -= 1

    async def _execute(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            current = self._requests.get(key)
            if current is not None and current.future is asyncio.current_task():
                del self._requests[key]
