"""CLI for caldelta: inspect calendars, list events, run syncs and serve the API."""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar
from zoneinfo import ZoneInfo

import click

from caldelta.api.deps import CONFIG_PATH_ENV
from caldelta.config import DEFAULT_CONFIG_PATH, CaldeltaConfig, ConfigError, load_config
from caldelta.core.logging import configure_logging
from caldelta.core.telemetry import init_telemetry
from caldelta.errors import CalendarError
from caldelta.models import CalendarEvent, CalendarRef
from caldelta.service import CalendarService, build_service

T = TypeVar("T")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 40300


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to caldelta.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """caldelta: multi-provider calendar sync with optimistic local edits."""
    ctx.obj = {"config_path": config_path}


def _load(ctx: click.Context) -> CaldeltaConfig:
    """Load the config, set up logging/telemetry, or exit with an error."""
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    init_telemetry("caldelta-cli")
    return config


def _run(config: CaldeltaConfig, action: Callable[[CalendarService], Awaitable[T]]) -> T:
    async def _main() -> T:
        service = build_service(config)
        try:
            return await action(service)
        finally:
            await service.aclose()

    try:
        return asyncio.run(_main())
    except (CalendarError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _format_event(event: CalendarEvent) -> str:
    if event.all_day:
        when = f"{event.start.date().isoformat()} (all day)"
    else:
        when = f"{event.start.isoformat()} -> {event.end.isoformat()}"
    return f"{when}  {event.title}  [{event.account_id}:{event.calendar_id}/{event.id}]"


@cli.command()
@click.option("--account", "accounts", multiple=True, help="Only list these account ids")
@click.pass_context
def calendars(ctx: click.Context, accounts: tuple[str, ...]) -> None:
    """List the calendars of every connected account."""
    config = _load(ctx)
    found = _run(config, lambda service: service.list_calendars(list(accounts) or None))

    if not found:
        click.echo("No calendars found.")
        return
    for calendar in found:
        flags = [
            label
            for label, enabled in (("primary", calendar.primary), ("read-only", calendar.read_only))
            if enabled
        ]
        suffix = f" ({', '.join(flags)})" if flags else ""
        click.echo(f"{calendar.ref}  {calendar.name}{suffix}")


@cli.command()
@click.option("--from", "time_min", type=click.DateTime(), required=True, help="Window start")
@click.option("--to", "time_max", type=click.DateTime(), required=True, help="Window end")
@click.option(
    "--calendar",
    "calendar_refs",
    multiple=True,
    help="Calendar as account:calendar (repeatable; default: all calendars)",
)
@click.option("--time-zone", default=None, help="IANA time zone (default: config time_zone)")
@click.pass_context
def events(
    ctx: click.Context,
    time_min: datetime,
    time_max: datetime,
    calendar_refs: tuple[str, ...],
    time_zone: str | None,
) -> None:
    """List the events of the given calendars in a time window."""
    config = _load(ctx)
    zone = time_zone or config.time_zone
    try:
        refs = [CalendarRef.parse(value) for value in calendar_refs] or None
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--calendar") from exc
    start, end = _localize(time_min, zone), _localize(time_max, zone)
    if end <= start:
        raise click.BadParameter("--to must be after --from", param_hint="--to")

    result = _run(config, lambda service: service.list_events(refs, start, end, zone))

    if not result.events:
        click.echo("No events found.")
        return
    for event in result.events:
        click.echo(_format_event(event))


@cli.command()
@click.argument("calendar")
@click.option("--token", "sync_token", default=None, help="Sync token from a previous run")
@click.option(
    "--from", "time_min", type=click.DateTime(), default=None, help="Full-sync window start"
)
@click.option("--to", "time_max", type=click.DateTime(), default=None, help="Full-sync window end")
@click.pass_context
def sync(
    ctx: click.Context,
    calendar: str,
    sync_token: str | None,
    time_min: datetime | None,
    time_max: datetime | None,
) -> None:
    """Sync one calendar (account:calendar) and print the changes and next token."""
    config = _load(ctx)
    try:
        ref = CalendarRef.parse(calendar)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="CALENDAR") from exc
    start = _localize(time_min, config.time_zone) if time_min else None
    end = _localize(time_max, config.time_zone) if time_max else None

    result = _run(
        config,
        lambda service: service.sync(ref, sync_token=sync_token, time_min=start, time_max=end),
    )

    for change in result.changes:
        if change.status == "deleted":
            click.echo(f"deleted  {change.event.id}")
        else:
            click.echo(f"updated  {_format_event(change.event)}")
    click.echo(f"status: {result.status}, changes: {len(result.changes)}")
    click.echo(f"sync token: {result.sync_token or '(none)'}")


@cli.command()
@click.option("--host", default=DEFAULT_HOST, show_default=True, help="Bind address")
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    os.environ[CONFIG_PATH_ENV] = str(ctx.obj["config_path"])
    click.echo(f"Starting caldelta API on {host}:{port}")
    uvicorn.run(
        "caldelta.api.app:create_app",
        host=host,
        port=port,
        factory=True,
    )


def _localize(value: datetime, time_zone: str) -> datetime:
    """Attach ``time_zone`` to a naive datetime parsed from the command line."""
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=ZoneInfo(time_zone))
