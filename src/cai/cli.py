"""CLI for Cai: run the scheduler once, as a daemon, or inspect its state."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from cai import __version__
from cai.config import CaiConfig, ConfigError, load_config
from cai.core.engine import SchedulerError
from cai.core.logging import configure_logging
from cai.core.preferences import Preferences
from cai.daemon import RunStatus, SchedulerService
from cai.modules.calendar import CalendarAuthError, CalendarError

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to cai.toml (defaults to ./cai.toml when present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Cai places lunch, coffee breaks and focus time on your calendar."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)
    ctx.obj = config


def _with_service(config: CaiConfig, fn: Callable[[SchedulerService], Awaitable[T]]) -> T:
    """Run *fn* against a started service with the poller disabled."""

    async def _run() -> T:
        config.sync.enabled = False
        service = SchedulerService(config)
        await service.start()
        try:
            return await fn(service)
        finally:
            await service.shutdown()

    return asyncio.run(_run())


def _with_service_or_exit(
    config: CaiConfig, fn: Callable[[SchedulerService], Awaitable[T]]
) -> T:
    """Like :func:`_with_service`; exits 2 on config or credential errors, 1 on failures."""
    try:
        return _with_service(config, fn)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)
    except CalendarAuthError as exc:
        click.echo(f"Authentication error: {exc}", err=True)
        sys.exit(2)
    except (CalendarError, SchedulerError) as exc:
        click.echo(f"Calendar error: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_obj
def sync(config: CaiConfig) -> None:
    """Run the scheduler once now."""
    outcome = _with_service(config, lambda service: service.trigger("cli"))
    if outcome.status is RunStatus.completed and outcome.report is not None:
        click.echo(
            f"Scheduled {outcome.report.created_count} event(s) "
            f"across {len(outcome.report.days_planned)} day(s)"
        )
        return
    click.echo(f"Run {outcome.status}: {outcome.error or 'no details'}")
    if outcome.status is RunStatus.failed:
        sys.exit(1)


@cli.command()
@click.pass_obj
def run(config: CaiConfig) -> None:
    """Start the sync poller and keep running until interrupted."""
    asyncio.run(_run_daemon(config))


async def _run_daemon(config: CaiConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    service = SchedulerService(config)
    await service.start()
    click.echo(f"Cai running (cron={config.sync.cron}, calendar={config.calendar_id})")

    await shutdown_event.wait()
    await service.shutdown()


@cli.command()
@click.pass_obj
def clear(config: CaiConfig) -> None:
    """Delete every event Cai created in the scheduling window."""
    deleted = _with_service_or_exit(config, lambda service: service.clear())
    if deleted is None:
        click.echo("A scheduler run is in progress; try again shortly")
        sys.exit(1)
    click.echo(f"Deleted {deleted} managed event(s)")


@cli.command()
@click.option("--offset", type=int, default=0, show_default=True, help="Week offset from now")
@click.pass_obj
def insights(config: CaiConfig, offset: int) -> None:
    """Show focus and meeting statistics for one week."""
    week = _with_service_or_exit(config, lambda service: service.week_insights(offset))
    click.echo(json.dumps(week.to_payload(), indent=2))


@cli.group()
def preferences() -> None:
    """Show or change scheduling preferences."""


@preferences.command("show")
@click.pass_obj
def preferences_show(config: CaiConfig) -> None:
    """Print the saved preferences."""
    saved = _with_service_or_exit(config, lambda service: service.load_preferences())
    if saved is None:
        click.echo("No preferences saved")
        return
    click.echo(json.dumps(saved.to_storage(), indent=2))


@preferences.command("set")
@click.option("--work-start", help="Start of the working day (HH:MM)")
@click.option("--work-end", help="End of the working day (HH:MM)")
@click.option("--lunch-duration", type=int, help="Lunch length in minutes (0 disables)")
@click.option("--lunch-time", help="Preferred lunch start (HH:MM)")
@click.option("--coffee-duration", type=int, help="Coffee break length in minutes (0 disables)")
@click.option("--coffee-time", help="Preferred coffee break start (HH:MM)")
@click.option("--focus-goal", type=float, help="Weekly focus goal in hours")
@click.pass_obj
def preferences_set(config: CaiConfig, **options: Any) -> None:
    """Update saved preferences; unspecified fields keep their current value."""
    updates = {
        key: value
        for key, value in {
            "workingHoursStart": options["work_start"],
            "workingHoursEnd": options["work_end"],
            "lunchDuration": options["lunch_duration"],
            "lunchPreference": options["lunch_time"],
            "coffeeBreakDuration": options["coffee_duration"],
            "coffeePreference": options["coffee_time"],
            "focusTimeGoal": options["focus_goal"],
        }.items()
        if value is not None
    }

    async def _update(service: SchedulerService) -> Preferences:
        current = await service.load_preferences() or Preferences()
        merged = Preferences.model_validate({**current.to_storage(), **updates})
        await service.save_preferences(merged)
        return merged

    try:
        saved = _with_service(config, _update)
    except (ValueError, ConfigError) as exc:
        click.echo(f"Invalid preferences: {exc}", err=True)
        sys.exit(2)
    click.echo(json.dumps(saved.to_storage(), indent=2))
