"""Click-based CLI for index-feed.

Thin wrapper around the library. Every command builds a facade from config,
runs one query and prints the answer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from index_feed.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


def _load_descriptor(config, index_id: str):
    """Catalog entry for ``index_id``, or None when no catalog is configured."""
    if not config.catalog_path:
        return None
    from index_feed.catalog import load_index_catalog

    return load_index_catalog(config.catalog_path).get(index_id)


def _resolve_range(start: datetime | None, end: datetime | None, default_days: int = 30):
    """Turn CLI dates into a half-open range; ``end`` is inclusive on the command line."""
    from index_feed.core import TimeRange

    end_ts = (
        end.replace(tzinfo=timezone.utc) + timedelta(days=1)
        if end is not None
        else datetime.now(timezone.utc)
    )
    start_ts = (
        start.replace(tzinfo=timezone.utc)
        if start is not None
        else end_ts - timedelta(days=default_days)
    )
    if end_ts <= start_ts:
        raise click.UsageError("--end must not be before --start")
    return TimeRange(start=start_ts, end=end_ts)


async def _with_facade(ctx: click.Context, index_id: str, query):
    """Open a facade, run ``query(facade)`` and clean up.

    With ``storage.sqlite_path`` set, the series is restored before the query
    and saved after it. Any index-feed error along the way (config, catalog,
    snapshot or the query itself) is printed and exits with status 1.
    """
    from index_feed.core import IndexFeedError
    from index_feed.facade import open_index
    from index_feed.series import SqliteSeriesSnapshot
    from index_feed.sources import build_source

    source = None
    try:
        config = _load_config(ctx)
        source = build_source(config.source)
        descriptor = _load_descriptor(config, index_id)
        facade = open_index(index_id, source, config=config, descriptor=descriptor)
        snapshot = None
        if config.storage.sqlite_path:
            snapshot = SqliteSeriesSnapshot(config.storage.sqlite_path)
            await snapshot.restore(facade.store)
        result = await query(facade)
        if snapshot is not None:
            await snapshot.save(facade.store)
        return result
    except (IndexFeedError, ValueError) as exc:
        console.print(f"[red]Error for {index_id}: {escape(str(exc))}[/red]")
        if ctx.obj["verbose"] and isinstance(exc, IndexFeedError) and exc.context:
            console.print(f"[dim]{escape(json.dumps(exc.context, default=str))}[/dim]")
        raise SystemExit(1)
    finally:
        close = getattr(source, "close", None)
        if close is not None:
            await close()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="INDEX_FEED_CONFIG",
    default=None,
    help="Path to index-feed.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output.",
)
@click.version_option(package_name="index-feed")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Index Feed: cached market index quotes and analytics."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console


# ---------------------------------------------------------------------------
# quote
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("index_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def quote(ctx: click.Context, index_id: str, output_format: str) -> None:
    """Show the latest level of an index."""
    async def _query(facade):
        return await facade.current_price()

    result = _run_async(_with_facade(ctx, index_id, _query))

    if output_format == "json":
        output = {"index_id": index_id, **result.quote.model_dump(mode="json"), "stale": result.stale}
        click.echo(json.dumps(output, indent=2, default=str))
        return

    table = Table(title=f"{index_id} latest quote")
    table.add_column("Field", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Price", str(result.price))
    table.add_row("Timestamp", result.timestamp.isoformat())
    table.add_row("Source", result.quote.source)
    table.add_row("Stale", "yes" if result.stale else "no")
    console.print(table)


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("index_id")
@click.option(
    "--start",
    "-s",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="First day (YYYY-MM-DD). Default: 30 days before --end.",
)
@click.option(
    "--end",
    "-e",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Last day, inclusive (YYYY-MM-DD). Default: now.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json", "csv"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def history(
    ctx: click.Context,
    index_id: str,
    start: datetime | None,
    end: datetime | None,
    output_format: str,
) -> None:
    """Show stored quotes for a date range."""
    time_range = _resolve_range(start, end)

    async def _query(facade):
        return await facade.history(time_range)

    result = _run_async(_with_facade(ctx, index_id, _query))

    if result.partial:
        console.print("[yellow]Upstream data does not cover the whole range.[/yellow]")

    if output_format == "json":
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2, default=str))
    elif output_format == "csv":
        _output_history_csv(result)
    else:
        _output_history_table(result)


def _output_history_table(result) -> None:
    """Render history as a Rich table."""
    table = Table(title=f"{result.index_id} history")
    table.add_column("Timestamp", style="bold")
    table.add_column("Price", justify="right")
    table.add_column("Volume", justify="right")

    for q in result.quotes:
        table.add_row(q.timestamp.isoformat(), str(q.price), str(q.volume or ""))

    console.print(table)
    console.print(f"{len(result)} quotes" + (" (stale)" if result.stale else ""))


def _output_history_csv(result) -> None:
    """Write history as CSV to stdout."""
    from index_feed.analytics import quotes_frame

    frame = quotes_frame(result.quotes)
    click.echo(frame.to_csv(), nl=False)


# ---------------------------------------------------------------------------
# analytics
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("index_id")
@click.argument(
    "kind",
    type=click.Choice(["simple_return", "moving_average", "volatility", "max_drawdown"]),
)
@click.option("--window", "-w", type=int, default=None, help="Window size. Default: from config.")
@click.option(
    "--start",
    "-s",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="First day (YYYY-MM-DD). Default: whole stored series.",
)
@click.option(
    "--end",
    "-e",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Last day, inclusive (YYYY-MM-DD).",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def analytics(
    ctx: click.Context,
    index_id: str,
    kind: str,
    window: int | None,
    start: datetime | None,
    end: datetime | None,
    output_format: str,
) -> None:
    """Compute a derived metric (returns, moving average, volatility, drawdown)."""
    from index_feed.core import AnalyticsParams

    if window is not None and window < 1:
        raise click.UsageError("--window must be >= 1")
    time_range = _resolve_range(start, end) if start is not None or end is not None else None
    params = AnalyticsParams(window=window, time_range=time_range)

    async def _query(facade):
        return await facade.analytics(kind, params)

    result = _run_async(_with_facade(ctx, index_id, _query))

    if output_format == "json":
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2, default=str))
        return

    table = Table(title=f"{index_id} {kind}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row(kind, str(result.value))
    if result.window is not None:
        table.add_row("Window", str(result.window))
    table.add_row("Observations", str(result.observations))
    table.add_row("Stale", "yes" if result.stale else "no")
    console.print(table)


# ---------------------------------------------------------------------------
# constituents
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("index_id")
@click.option("--name", "-n", type=str, default=None, help="Filter by company name (substring).")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def constituents(ctx: click.Context, index_id: str, name: str | None, output_format: str) -> None:
    """List the companies in an index, from the configured catalog."""
    from index_feed.core import ConfigError

    config = _load_config(ctx)
    if not config.catalog_path:
        console.print("[yellow]No catalog configured. Set catalog_path in config.[/yellow]")
        raise SystemExit(1)
    try:
        descriptor = _load_descriptor(config, index_id)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise SystemExit(1)
    if descriptor is None:
        console.print(f"[yellow]{index_id} is not in the catalog.[/yellow]")
        raise SystemExit(1)

    companies = descriptor.stock_by_name(name) if name else descriptor.companies()

    if output_format == "json":
        output = [c.model_dump(mode="json") for c in companies]
        click.echo(json.dumps(output, indent=2, default=str))
        return

    table = Table(title=f"{descriptor.name} ({descriptor.currency})")
    table.add_column("Ticker", style="bold")
    table.add_column("Name")
    table.add_column("ISIN")
    table.add_column("National ID")
    for c in companies:
        table.add_row(c.ticker, c.full_name or c.short_name, c.isin, c.extra_id or "")
    console.print(table)
    console.print(
        f"Session {descriptor.open_time:%H:%M}-{descriptor.close_time:%H:%M} UTC, "
        f"{len(companies)} of {len(descriptor.constituents)} constituents"
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
