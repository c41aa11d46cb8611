"""CLI for calhub: migrate the store, manage sources, run and inspect syncs."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import click

from calhub import __version__
from calhub.app import CalhubApp, database_from_config, open_app, setup_observability
from calhub.config import CalhubConfig, ConfigError, load_config
from calhub.migrations import MigrationsNotFoundError, resolve_alembic_dir, run_migrations
from calhub.models import SourceConfigError, SourceKind
from calhub.sync import BatchResult, SourceDisabledError, SourceNotFoundError, SourceSyncOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to calhub.toml (or a directory containing it)",
)


def _load(config_path: Path | None) -> CalhubConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    setup_observability(config)
    return config


def _with_app(
    config: CalhubConfig, action: Callable[[CalhubApp], Awaitable[T]], *, migrate: bool = False
) -> T:
    async def _main() -> T:
        async with open_app(config, migrate=migrate) as app:
            return await action(app)

    return asyncio.run(_main())


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _fmt_time(value: datetime | None) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M") if value else "-"


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """calhub: unified calendar sync engine."""


@cli.command()
@config_option
def migrate(config_path: Path | None) -> None:
    """Create the database if needed and apply schema migrations."""
    config = _load(config_path)
    db = database_from_config(config)
    try:
        resolve_alembic_dir()
    except MigrationsNotFoundError as exc:
        _fail(str(exc))

    async def _main() -> None:
        await db.provision()
        await run_migrations(db.sqlalchemy_url)

    asyncio.run(_main())
    click.echo(f"Database {config.database.name} is up to date")


@cli.command()
@config_option
@click.option("--source", "source_id", type=int, default=None, help="Sync only this source")
@click.option("--force", is_flag=True, help="Discard cursor and events before syncing")
def sync(config_path: Path | None, source_id: int | None, force: bool) -> None:
    """Sync all enabled sources, or a single source with --source."""
    config = _load(config_path)
    if force and source_id is None:
        _fail("--force requires --source")

    if source_id is None:
        batch: BatchResult = _with_app(config, lambda app: app.require_orchestrator().sync_all())
        _print_batch(batch)
        if batch.failed:
            sys.exit(1)
        return

    async def _one(app: CalhubApp) -> SourceSyncOutcome:
        orchestrator = app.require_orchestrator()
        if force:
            return await orchestrator.force_resync(source_id)
        return await orchestrator.sync_source(source_id)

    try:
        outcome = _with_app(config, _one)
    except (SourceNotFoundError, SourceDisabledError) as exc:
        _fail(str(exc))
    except Exception as exc:
        _fail(f"Sync of source {source_id} failed: {exc}")
    else:
        _print_outcome(outcome)


def _print_outcome(outcome: SourceSyncOutcome) -> None:
    if outcome.unchanged:
        click.echo(f"Source {outcome.source_id}: not modified ({outcome.events_count} events)")
        return
    click.echo(
        f"Source {outcome.source_id}: {outcome.new_events} received, "
        f"{outcome.deleted_events} deleted, {outcome.events_count} stored"
    )


def _print_batch(batch: BatchResult) -> None:
    if batch.skipped:
        click.echo(f"Skipped: {batch.reason}")
        return
    click.echo(f"{len(batch.success)} succeeded, {len(batch.failed)} failed")
    for outcome in batch.success:
        _print_outcome(outcome)
    for failure in batch.failed:
        click.echo(f"  failed: {failure.source_id} ({failure.source_name}): {failure.error}")


@cli.command()
@config_option
def status(config_path: Path | None) -> None:
    """Show the sync status of every source."""
    config = _load(config_path)
    rows = _with_app(config, lambda app: app.require_orchestrator().get_sync_status())
    if not rows:
        click.echo("No sources configured")
        return

    click.echo(f"{'ID':<6} {'Name':<24} {'Kind':<18} {'Status':<9} {'Events':<7} {'Last sync'}")
    click.echo("-" * 84)
    for row in rows:
        state = str(row.status) if row.status is not None else "never"
        if not row.enabled:
            state = f"{state}*"
        click.echo(
            f"{row.source_id:<6} {row.source_name[:24]:<24} {row.source_kind:<18} "
            f"{state:<9} {row.event_count:<7} {_fmt_time(row.last_sync_at)}"
        )
        if row.last_error:
            click.echo(f"{'':<6} error: {row.last_error}")


@cli.command()
@config_option
def run(config_path: Path | None) -> None:
    """Run the cron-driven sync scheduler until interrupted."""
    config = _load(config_path)
    click.echo(f"Starting calhub scheduler (cron={config.sync.cron})")
    asyncio.run(_run_scheduler(config))


async def _run_scheduler(config: CalhubConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async with open_app(config, migrate=True) as app:
        app.start_scheduler()
        await shutdown_event.wait()


@cli.group()
def sources() -> None:
    """Manage calendar sources."""


@sources.command("list")
@config_option
@click.option("--enabled-only", is_flag=True, help="Hide disabled sources")
def sources_list(config_path: Path | None, enabled_only: bool) -> None:
    """List configured sources."""
    config = _load(config_path)

    async def _list(app: CalhubApp) -> list[Any]:
        assert app.sources is not None
        return await app.sources.list_sources(enabled_only=enabled_only)

    rows = _with_app(config, _list)
    if not rows:
        click.echo("No sources configured")
        return
    click.echo(f"{'ID':<6} {'Name':<24} {'Kind':<18} {'Enabled':<8} {'Config'}")
    click.echo("-" * 84)
    for source in rows:
        enabled = "yes" if source.enabled else "no"
        config_json = json.dumps(source.connection_config, sort_keys=True)
        click.echo(
            f"{source.id:<6} {source.name[:24]:<24} {source.kind:<18} {enabled:<8} {config_json}"
        )


def _parse_settings(pairs: tuple[str, ...], connection: str | None) -> dict[str, Any]:
    settings: dict[str, Any] = {}
    if connection:
        try:
            loaded = json.loads(connection)
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"invalid JSON: {exc}", param_hint="--connection") from exc
        if not isinstance(loaded, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--connection")
        settings.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--set")
        settings[key.strip()] = value
    return settings


@sources.command("add")
@config_option
@click.argument("name")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in SourceKind]),
    required=True,
    help="Source kind",
)
@click.option("--set", "pairs", multiple=True, help="Connection setting as KEY=VALUE")
@click.option("--connection", default=None, help="Connection settings as a JSON object")
@click.option("--owner", "owner_id", default=None, help="Owner id (OAuth account default)")
@click.option("--color", "display_color", default=None, help="Display color, e.g. #3366ff")
@click.option("--disabled", is_flag=True, help="Create the source disabled")
def sources_add(
    config_path: Path | None,
    name: str,
    kind: str,
    pairs: tuple[str, ...],
    connection: str | None,
    owner_id: str | None,
    display_color: str | None,
    disabled: bool,
) -> None:
    """Register a new calendar source."""
    settings = _parse_settings(pairs, connection)
    config = _load(config_path)

    async def _add(app: CalhubApp) -> Any:
        assert app.sources is not None
        return await app.sources.create(
            name=name,
            kind=kind,
            connection_config=settings,
            owner_id=owner_id,
            enabled=not disabled,
            display_color=display_color,
        )

    try:
        source = _with_app(config, _add)
    except (SourceConfigError, ValueError) as exc:
        _fail(f"Invalid source: {exc}")
    else:
        click.echo(f"Created source {source.id}: {source.name} ({source.kind})")


def _set_enabled(config_path: Path | None, source_id: int, enabled: bool) -> None:
    config = _load(config_path)

    async def _toggle(app: CalhubApp) -> Any:
        assert app.sources is not None
        return await app.sources.set_enabled(source_id, enabled)

    try:
        source = _with_app(config, _toggle)
    except SourceNotFoundError as exc:
        _fail(str(exc))
    else:
        click.echo(f"Source {source.id} {'enabled' if source.enabled else 'disabled'}")


@sources.command("enable")
@config_option
@click.argument("source_id", type=int)
def sources_enable(config_path: Path | None, source_id: int) -> None:
    """Enable a source for scheduled syncs."""
    _set_enabled(config_path, source_id, True)


@sources.command("disable")
@config_option
@click.argument("source_id", type=int)
def sources_disable(config_path: Path | None, source_id: int) -> None:
    """Disable a source; its events are kept."""
    _set_enabled(config_path, source_id, False)


@sources.command("remove")
@config_option
@click.argument("source_id", type=int)
@click.confirmation_option(prompt="Delete the source and all of its events?")
def sources_remove(config_path: Path | None, source_id: int) -> None:
    """Delete a source together with its cursor and events."""
    config = _load(config_path)

    async def _remove(app: CalhubApp) -> bool:
        assert app.sources is not None
        orchestrator = app.require_orchestrator()
        source = await app.sources.get(source_id)
        if source is not None:
            await orchestrator.registry.clear_provider(source)
        return await app.sources.delete(source_id)

    if not _with_app(config, _remove):
        _fail(f"Source not found: {source_id}")
    click.echo(f"Removed source {source_id}")


@cli.command()
@config_option
@click.option("--source", "source_id", type=int, default=None, help="Only this source")
@click.option("--days", type=click.IntRange(min=1), default=7, help="Days ahead to show")
@click.option("--limit", type=click.IntRange(min=1), default=200, help="Maximum rows")
def events(config_path: Path | None, source_id: int | None, days: int, limit: int) -> None:
    """List stored events from now through the next N days."""
    config = _load(config_path)
    start = datetime.now(UTC)
    end = start + timedelta(days=days)

    async def _events(app: CalhubApp) -> list[Any]:
        assert app.reconciler is not None
        return await app.reconciler.list_events(
            source_id=source_id, start=start, end=end, limit=limit
        )

    rows = _with_app(config, _events)
    if not rows:
        click.echo("No events in range")
        return
    for event in rows:
        when = event.starts_at.date().isoformat() if event.all_day else _fmt_time(event.starts_at)
        marker = "" if event.status == "confirmed" else f" [{event.status}]"
        click.echo(f"{when:<16} src={event.source_id:<4} {event.title or '(untitled)'}{marker}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
