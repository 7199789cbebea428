"""Cache warming for hot lookups.

Registers lookups that most requests need (institution lists, dashboard
counters, ...) and writes them into the cache ahead of demand, at startup
and on an interval.

Example:
    warmer = CacheWarmer(cache)
    warmer.add_job("lookup:institutions", load_active_institutions, ttl=600)
    warmer.add_job("stats:global", load_global_stats, ttl=60, tags=["stats"])

    await warmer.start(interval=300)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from tiercache.config import settings

if TYPE_CHECKING:
    from tiercache.cache.orchestrator import CacheOrchestrator, Loader

logger = logging.getLogger(__name__)


@dataclass
class WarmJob:
    """A lookup to keep warm."""

    key: str
    loader: Loader
    ttl: float | None = None
    tags: tuple[str, ...] = ()
    last_run: datetime | None = None
    last_error: str | None = None


@dataclass
class WarmResult:
    """Outcome of one warm_all() pass."""

    warmed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: bool = False
    duration_ms: float = 0.0


class CacheWarmer:
    """Pre-populates the cache from registered loaders.

    Each job writes with set() so a warm pass always refreshes the value
    rather than returning the cached one. A failing job is logged and does
    not affect the other jobs. Overlapping passes are skipped.
    """

    def __init__(self, cache: CacheOrchestrator) -> None:
        self.cache = cache
        self._jobs: dict[str, WarmJob] = {}
        self._is_warming = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_warming(self) -> bool:
        return self._is_warming

    @property
    def jobs(self) -> list[WarmJob]:
        return list(self._jobs.values())

    def add_job(
        self,
        key: str,
        loader: Loader,
        ttl: float | None = None,
        tags: Iterable[str] = (),
    ) -> WarmJob:
        """Register a lookup to warm. Re-registering a key replaces the job."""
        job = WarmJob(key=key, loader=loader, ttl=ttl, tags=tuple(tags))
        self._jobs[key] = job
        return job

    def remove_job(self, key: str) -> bool:
        return self._jobs.pop(key, None) is not None

    async def warm_all(self) -> WarmResult:
        """Run every job concurrently."""
        if self._is_warming:
            logger.warning("Cache warming already in progress, skipping")
            return WarmResult(skipped=True)

        self._is_warming = True
        logger.info("Starting cache warming...")
        start = time.perf_counter()
        result = WarmResult()

        try:
            jobs = list(self._jobs.values())
            outcomes = await asyncio.gather(
                *(self._warm(job) for job in jobs), return_exceptions=True
            )
            for job, outcome in zip(jobs, outcomes):
                job.last_run = datetime.now(UTC)
                if isinstance(outcome, Exception):
                    job.last_error = repr(outcome)
                    result.failed[job.key] = job.last_error
                    logger.error(f"Failed to warm '{job.key}': {outcome!r}")
                else:
                    job.last_error = None
                    result.warmed.append(job.key)
        finally:
            self._is_warming = False

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Cache warming completed in {result.duration_ms:.0f}ms "
            f"({len(result.warmed)} warmed, {len(result.failed)} failed)"
        )
        return result

    async def _warm(self, job: WarmJob) -> None:
        value = job.loader()
        if inspect.isawaitable(value):
            value = await value
        await self.cache.set(job.key, value, job.ttl, job.tags)

    async def start(self, interval: float | None = None, initial_delay: float = 0.0) -> None:
        """Warm once after ``initial_delay``, then every ``interval`` seconds.

        ``interval`` defaults to settings.warm_interval_seconds; 0 disables
        periodic warming.
        """
        if interval is None:
            interval = settings.warm_interval_seconds
        if interval <= 0:
            logger.info("Periodic cache warming disabled")
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop(interval, initial_delay))

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run_loop(self, interval: float, initial_delay: float) -> None:
        delay = initial_delay
        while True:
            try:
                await asyncio.sleep(delay)
                await self.warm_all()
                delay = interval
            except asyncio.CancelledError:
                break

    def status(self) -> dict[str, Any]:
        return {
            "is_warming": self._is_warming,
            "jobs": [
                {
                    "key": job.key,
                    "last_run": job.last_run.isoformat() if job.last_run else None,
                    "last_error": job.last_error,
                }
                for job in self._jobs.values()
            ],
            "cache": self.cache.stats(),
        }
