"""CLI for prepcal: sync calendars and inspect today's meetings."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from prepcal.calendar.errors import CalendarError
from prepcal.config import ConfigError, PrepcalConfig, load_config
from prepcal.core.logging import configure_logging, set_component_context
from prepcal.engine import CalendarEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to prepcal.toml (default: $PREPCAL_CONFIG or ~/.prepcal/prepcal.toml)",
)
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """prepcal: calendar sync and today's meetings."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=log_level or config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        component="cli",
    )
    ctx.obj = config


def _run_with_engine(
    config: PrepcalConfig, action: Callable[[CalendarEngine], Awaitable[T]]
) -> T:
    async def _main() -> T:
        engine = await CalendarEngine.from_config(config)
        try:
            return await action(engine)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_main())
    except CalendarError as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}") from exc


@cli.command()
@click.pass_obj
def sync(config: PrepcalConfig) -> None:
    """Run one synchronization of every connected calendar source."""
    result = _run_with_engine(config, lambda engine: engine.perform_manual_sync())
    if not result.success:
        raise click.ClickException(f"Sync failed: {result.error}")
    if result.error:
        click.echo(result.error)
    else:
        click.echo(f"Synced {result.events_count} event(s) at {result.sync_time:%H:%M:%S}")


@cli.command()
@click.pass_obj
def today(config: PrepcalConfig) -> None:
    """List today's meetings from the stored events."""
    result = _run_with_engine(config, lambda engine: engine.get_todays_meetings())
    if not result.meetings:
        click.echo("No meetings today.")
        return
    for meeting in result.meetings:
        if meeting.is_all_day:
            when = "all day"
        else:
            when = f"{meeting.start_date:%H:%M}-{meeting.end_date:%H:%M}"
        calendar = f" [{meeting.calendar_name}]" if meeting.calendar_name else ""
        click.echo(f"{when:<13} {meeting.title}{calendar}")


@cli.command()
@click.pass_obj
def discover(config: PrepcalConfig) -> None:
    """Discover calendars available to the native calendar application."""
    result = _run_with_engine(config, lambda engine: engine.discover_calendars())
    click.echo(f"Found {result.total_calendars} calendar(s):")
    for calendar in result.calendars:
        click.echo(f"  {calendar.name} ({calendar.type})")
    for error in result.errors or []:
        click.echo(f"  skipped: {error.error}")


@cli.command("import")
@click.argument("path", type=click.Path(path_type=Path))
@click.pass_obj
def import_cmd(config: PrepcalConfig, path: Path) -> None:
    """Import today's events from an .ics file under the current directory."""
    result = _run_with_engine(config, lambda engine: engine.import_file(path))
    click.echo(f"Imported {result.total_events} event(s) for today from {path}")
    for error in result.errors or []:
        click.echo(f"  skipped: {error.error}")


@cli.command()
@click.pass_obj
def status(config: PrepcalConfig) -> None:
    """Show stored-event and sync status."""

    async def _status(engine: CalendarEngine) -> tuple[int, str | None, bool]:
        events = await engine.get_stored_events()
        last_sync = await engine.store.get_last_calendar_sync()
        connected = await engine.synchronizer.has_connected_calendars()
        return len(events), last_sync.isoformat() if last_sync else None, connected

    count, last_sync, connected = _run_with_engine(config, _status)
    click.echo(f"Stored events:       {count}")
    click.echo(f"Last sync:           {last_sync or 'never'}")
    click.echo(f"Calendars connected: {'yes' if connected else 'no'}")
    click.echo(f"Daily sync cron:     {config.sync.cron}")


@cli.command()
@click.pass_obj
def run(config: PrepcalConfig) -> None:
    """Run the daily sync scheduler until interrupted."""
    asyncio.run(_run_daemon(config))


async def _run_daemon(config: PrepcalConfig) -> None:
    set_component_context("scheduler")
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    engine = await CalendarEngine.from_config(config)
    try:
        await engine.start_daily_sync()
        click.echo(f"prepcal running (daily sync: {config.sync.cron})")
        await shutdown_event.wait()
    finally:
        await engine.dispose()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
