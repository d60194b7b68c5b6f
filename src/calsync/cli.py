"""CLI for calsync — run the sync engine or drive one-off passes."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

import click

from calsync import __version__
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.sync.engine import CalendarSyncEngine
from calsync.sync.provider import CalendarEvent, DateRange
from calsync.sync.scheduler import SyncOptions, SyncParams

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("calsync.toml")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    envvar="CALSYNC_CONFIG",
    show_default=True,
    help="calsync.toml, or a directory containing one",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """calsync — keep a local view of a calendar in sync with its provider."""
    ctx.obj = {"config_path": config_path}


def _load(ctx: click.Context) -> CalsyncConfig:
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        engine_name=config.name,
    )
    return config


def _build_engine(config: CalsyncConfig, options: SyncOptions) -> CalendarSyncEngine:
    return CalendarSyncEngine.from_config(config, options)


def _format_event(event: CalendarEvent) -> str:
    start = event.start.date_time or event.start.date or "?"
    line = f"{start:<25} {event.summary or '(no title)'}"
    if event.location:
        line += f" @ {event.location}"
    return line


def _parse_month(
    ctx: click.Context,
    param: click.Parameter,
    value: str | None,
) -> tuple[int, int] | None:
    if value is None:
        return None
    try:
        parsed = datetime.strptime(value, "%Y-%m")
    except ValueError:
        raise click.BadParameter("expected YYYY-MM") from None
    return parsed.year, parsed.month


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the engine and keep syncing until interrupted."""
    config = _load(ctx)
    click.echo(
        f"Starting calendar sync '{config.name}' (every {config.sync.interval_minutes} min)"
    )
    asyncio.run(_run_engine(config))


@cli.command()
@click.option("--today", "today_only", is_flag=True, help="Only today's events (default)")
@click.option("--month", callback=_parse_month, help="A whole calendar month, as YYYY-MM")
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), help="Window start day")
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), help="Window end day")
@click.pass_context
def sync(
    ctx: click.Context,
    today_only: bool,
    month: tuple[int, int] | None,
    start: datetime | None,
    end: datetime | None,
) -> None:
    """Run a single sync pass and print the events."""
    chosen = sum([today_only, month is not None, start is not None or end is not None])
    if chosen > 1:
        raise click.UsageError("Use only one of --today, --month or --start/--end")

    config = _load(ctx)
    params: SyncParams | None = None
    if start is not None or end is not None:
        params = SyncParams(
            date_range=DateRange(
                start=start,
                # --end names a whole day; the provider bound is exclusive.
                end=end.replace(hour=23, minute=59, second=59) if end else None,
            ),
            max_results=config.sync.max_results,
        )

    ok = asyncio.run(_sync_once(config, month, params))
    if not ok:
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Check whether the calendar integration is connected."""
    config = _load(ctx)
    connected = asyncio.run(_check_status(config))
    if connected:
        click.echo("Calendar integration: connected")
    else:
        click.echo("Calendar integration: not connected")
        sys.exit(1)


@cli.command()
@click.option("--clear", is_flag=True, help="Delete the stored error log")
@click.pass_context
def errors(ctx: click.Context, clear: bool) -> None:
    """Show (or clear) the persisted calendar error log."""
    config = _load(ctx)
    asyncio.run(_show_errors(config, clear))


async def _run_engine(config: CalsyncConfig) -> None:
    init_telemetry(f"calsync.{config.name}")
    init_metrics(f"calsync.{config.name}")

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    def _on_success(events: list[CalendarEvent]) -> None:
        click.echo(f"Synced {len(events)} event(s)")

    def _on_error(message: str) -> None:
        click.echo(f"Sync failed: {message}", err=True)

    engine = _build_engine(
        config,
        SyncOptions(
            auto_sync=config.sync.auto_sync,
            interval_minutes=config.sync.interval_minutes,
            on_success=_on_success,
            on_error=_on_error,
        ),
    )
    async with engine:
        await shutdown_event.wait()


async def _sync_once(
    config: CalsyncConfig,
    month: tuple[int, int] | None,
    params: SyncParams | None,
) -> bool:
    engine = _build_engine(config, SyncOptions(auto_sync=False))
    async with engine:
        if month is not None:
            events = await engine.sync_month(*month)
        elif params is not None:
            events = await engine.sync_now(params)
        else:
            events = await engine.sync_today()
        state = engine.state
        steps = engine.recovery_steps()

    if state.error:
        click.echo(f"Sync failed [{state.error_code}]: {state.error}", err=True)
        for index, step in enumerate(steps, start=1):
            click.echo(f"  {index}. {step}", err=True)
        if state.using_cached_data:
            click.echo(f"Showing {len(state.events)} cached event(s)", err=True)
            for event in state.events:
                click.echo(_format_event(event))
        return False

    events = events or []
    if not events:
        click.echo("No events")
    for event in events:
        click.echo(_format_event(event))
    return True


async def _check_status(config: CalsyncConfig) -> bool:
    engine = _build_engine(config, SyncOptions(auto_sync=False))
    async with engine:
        return await engine.check_connection()


async def _show_errors(config: CalsyncConfig, clear: bool) -> None:
    engine = _build_engine(config, SyncOptions(auto_sync=False))
    async with engine:
        if clear:
            await engine.clear_error_logs()
            click.echo("Error log cleared")
            return
        entries = await engine.error_logs()

    if not entries:
        click.echo("No recorded errors")
        return

    click.echo(f"{'Timestamp':<34} {'Context':<18} {'Code':<20} Message")
    click.echo("-" * 100)
    for entry in entries:
        code = entry.error.get("code", "?")
        message = entry.error.get("user_message", "")
        click.echo(f"{entry.timestamp:<34} {entry.context:<18} {code:<20} {message}")
