"""CLI for calsync: run the API server and one-off syncs."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import click

from calsync import __version__
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.crypto import EncryptionKeyError, TokenCipher
from calsync.errors import CalendarSyncError
from calsync.models import SyncResult

logger = logging.getLogger(__name__)


def _parse_instant(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        raise click.BadParameter("timestamp must include a UTC offset")
    return parsed


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to $CALSYNC_CONFIG or ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: unified calendar sync across local, Google and GitHub sources."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.log_file) if config.logging.log_file else None,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides [server].host)")
@click.option("--port", type=int, default=None, help="Bind port (overrides [server].port)")
@click.pass_obj
def serve(config: CalsyncConfig, host: str | None, port: int | None) -> None:
    """Start the HTTP API server."""
    import uvicorn

    from calsync.api import create_app

    try:
        TokenCipher.from_env()
    except EncryptionKeyError as exc:
        raise click.ClickException(str(exc)) from exc

    host = host or config.server.host
    port = port or config.server.port
    click.echo(f"Starting calsync API on {host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


@cli.command()
@click.option("--user", "user_id", required=True, help="User id to sync")
@click.option(
    "--start",
    callback=_parse_instant,
    default=None,
    help="Window start, ISO 8601 with offset (defaults to the lookback window)",
)
@click.option(
    "--end",
    callback=_parse_instant,
    default=None,
    help="Window end, ISO 8601 with offset (defaults to the lookahead window)",
)
@click.pass_obj
def sync(
    config: CalsyncConfig,
    user_id: str,
    start: datetime | None,
    end: datetime | None,
) -> None:
    """Run one sync for a user and print a summary."""
    try:
        result = asyncio.run(_run_sync(config, user_id, start=start, end=end))
    except (EncryptionKeyError, CalendarSyncError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(result.summary)
    click.echo(f"{len(result.unified_events)} event(s) in window")
    for error in result.partial_errors:
        click.echo(f"  {error.provider}: {error.kind} {error.detail or ''}".rstrip())
        for nested in error.calendar_errors:
            click.echo(f"    [{nested.calendar_id}] {nested.kind} {nested.detail or ''}".rstrip())
    if result.partial_errors:
        sys.exit(2)


@cli.command()
@click.option("--user", "user_id", required=True, help="User id to inspect")
@click.pass_obj
def status(config: CalsyncConfig, user_id: str) -> None:
    """Show connection and sync status for every provider."""
    try:
        statuses = asyncio.run(_run_status(config, user_id))
    except EncryptionKeyError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{'Provider':<10} {'Connected':<10} {'Reauth':<8} {'Stale':<7} {'Last sync'}")
    click.echo("-" * 64)
    for entry in statuses:
        last_sync = entry.last_sync_at.isoformat() if entry.last_sync_at else "never"
        click.echo(
            f"{entry.provider.value:<10} {_yes_no(entry.connected):<10} "
            f"{_yes_no(entry.needs_reauth):<8} {_yes_no(entry.stale):<7} {last_sync}"
        )


@cli.command("generate-key")
def generate_key() -> None:
    """Print a new value for CALSYNC_ENCRYPTION_KEY."""
    click.echo(TokenCipher.generate_key())


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


async def _run_sync(
    config: CalsyncConfig,
    user_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> SyncResult:
    from calsync.services import open_services

    async with open_services(config) as services:
        orchestrator = services.orchestrator
        window = None
        if start is not None or end is not None:
            window = orchestrator.resolve_window(start, end)
        return await orchestrator.trigger_sync(user_id, window)


async def _run_status(config: CalsyncConfig, user_id: str):
    from calsync.services import open_services

    async with open_services(config) as services:
        return await services.orchestrator.provider_status(user_id)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
