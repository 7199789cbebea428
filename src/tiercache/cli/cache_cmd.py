"""CLI commands for operating on the shared cache.

Invalidations go through the orchestrator so that they are also broadcast to
running instances, which drop their local copies.

Usage:
    tiercache cache health
    tiercache cache stats --redis-url redis://cache:6379/0
    tiercache cache delete "state:institution:42"
    tiercache cache invalidate "batches:institution:*"
    tiercache cache invalidate-tag institutions
    tiercache cache flush --yes
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console
from rich.table import Table

from tiercache.cache.orchestrator import CacheConfig, CacheOrchestrator
from tiercache.cache.redis import RedisCache

app = typer.Typer(help="Inspect and invalidate the shared cache")
console = Console()

T = TypeVar("T")

RedisUrlOption = typer.Option(
    None,
    "--redis-url",
    "-r",
    help="Redis URL (defaults to REDIS_URL)",
)


def _build_cache(redis_url: str | None) -> CacheOrchestrator:
    """Build an orchestrator for one-shot administrative use."""
    config = CacheConfig.from_settings()
    if redis_url:
        config.distributed_endpoint = redis_url
    config.sweep_interval_seconds = 0
    return CacheOrchestrator(config)


def _run(redis_url: str | None, action: Callable[[CacheOrchestrator], Awaitable[T]]) -> T:
    """Connect, run ``action`` and shut down, exiting 1 if Redis is unreachable."""

    async def _main() -> T:
        cache = _build_cache(redis_url)
        if not isinstance(cache.distributed, RedisCache):
            console.print("[red]No distributed tier configured:[/red] set REDIS_URL or --redis-url")
            raise typer.Exit(code=1)

        await cache.start()
        try:
            if not cache.distributed.is_available:
                console.print("[red]Redis is unreachable[/red]")
                raise typer.Exit(code=1)
            return await action(cache)
        finally:
            await cache.stop()

    return asyncio.run(_main())


@app.command()
def health(redis_url: str | None = RedisUrlOption) -> None:
    """Check connectivity to the distributed tier."""

    async def _health(cache: CacheOrchestrator) -> None:
        assert isinstance(cache.distributed, RedisCache)
        ok = await cache.distributed.health_check()
        console.print("[green]Redis OK[/green]" if ok else "[red]Redis ping failed[/red]")
        if not ok:
            raise typer.Exit(code=1)

    _run(redis_url, _health)


@app.command()
def stats(redis_url: str | None = RedisUrlOption) -> None:
    """Count cached keys per namespace."""

    async def _stats(cache: CacheOrchestrator) -> Counter[str]:
        assert isinstance(cache.distributed, RedisCache)
        client = cache.distributed.client
        assert client is not None
        prefix = f"{cache.distributed.key_prefix}:"
        counts: Counter[str] = Counter()
        async for name in client.scan_iter(match=f"{prefix}*", count=500):
            key = (name.decode() if isinstance(name, bytes) else name)[len(prefix):]
            counts[key.split(":", 1)[0]] += 1
        return counts

    counts = _run(redis_url, _stats)

    table = Table(title="Cached keys by namespace")
    table.add_column("Namespace", style="cyan")
    table.add_column("Keys", style="magenta", justify="right")
    for namespace, count in sorted(counts.items()):
        table.add_row(namespace, str(count))
    console.print(table)
    console.print(f"[bold]Total:[/bold] {sum(counts.values())} keys")


@app.command()
def delete(
    key: str = typer.Argument(..., help="Exact cache key"),
    redis_url: str | None = RedisUrlOption,
) -> None:
    """Invalidate a single key on every tier and instance."""
    _run(redis_url, lambda cache: cache.delete(key))
    console.print(f"[green]Deleted[/green] {key}")


@app.command()
def invalidate(
    prefix: str = typer.Argument(..., help="Key prefix, e.g. 'batches:institution:'"),
    redis_url: str | None = RedisUrlOption,
) -> None:
    """Invalidate every key under a prefix."""
    try:
        _run(redis_url, lambda cache: cache.delete_pattern(prefix))
    except ValueError as e:
        console.print(f"[red]Invalid prefix:[/red] {e}")
        raise typer.Exit(code=2) from e
    console.print(f"[green]Invalidated[/green] keys under {prefix}")


@app.command("invalidate-tag")
def invalidate_tag(
    tags: list[str] = typer.Argument(..., help="One or more tags"),
    redis_url: str | None = RedisUrlOption,
) -> None:
    """Invalidate every key labelled with any of the given tags."""
    keys = _run(redis_url, lambda cache: cache.invalidate_tags(tags))
    console.print(f"[green]Invalidated[/green] {len(keys)} keys tagged {', '.join(tags)}")


@app.command()
def flush(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    redis_url: str | None = RedisUrlOption,
) -> None:
    """Remove every cached entry under the configured key prefix."""
    if not yes:
        typer.confirm("Remove every cached entry?", abort=True)
    _run(redis_url, lambda cache: cache.clear())
    console.print("[green]Cache flushed[/green]")
