"""CLI commands for tiercache.

Provides an operator command-line interface using Typer:
- tiercache cache health: Check the distributed tier
- tiercache cache stats: Show key counts per namespace
- tiercache cache delete KEY: Invalidate one key on every instance
- tiercache cache invalidate PREFIX: Invalidate every key under a prefix
- tiercache cache invalidate-tag TAG...: Invalidate tagged keys
- tiercache cache flush: Remove every cached entry

Usage:
    tiercache --help
    tiercache cache invalidate "batches:institution:"
    tiercache cache invalidate-tag institutions stats
"""

import typer

from tiercache.cli.cache_cmd import app as cache_app
from tiercache.config import settings
from tiercache.observability import configure_logging, setup_tracing, shutdown_tracing

# Main CLI application
app = typer.Typer(
    name="tiercache",
    help="tiercache: two-tier cache-aside layer administration",
    no_args_is_help=True,
)

app.add_typer(cache_app, name="cache")


@app.callback()
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """tiercache: two-tier cache-aside layer administration."""
    configure_logging(
        json_format=settings.log_json and not verbose,
        level="DEBUG" if verbose else settings.log_level,
    )
    setup_tracing()
    ctx.call_on_close(shutdown_tracing)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
