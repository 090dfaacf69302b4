from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import signal
import sys

from dotenv import load_dotenv
from loguru import logger
import typer

from salesync.adapters.db.facade import DB
from salesync.adapters.db.task_queue import TaskQueueStore
from salesync.aggregates.recompute import AggregateService
from salesync.core.concurrency import CancelToken, SyncCancelledError
from salesync.core.config import SyncConfig, load_sync_config_from_env
from salesync.tools.maintenance.maintenance_tool import MaintenanceTool
from salesync.tools.sync.factory import create_sync_orchestrator
from salesync.tools.sync.orchestrator import SyncResult
from salesync.tools.sync.progress import (
    AggregatesProgress,
    CancelledProgress,
    CompleteProgress,
    DiscoveryProgress,
    ErrorProgress,
    PopulateProgress,
    SyncProgress,
)

# Load environment variables from .env
load_dotenv()

app = typer.Typer(help="salesync: partner sales sync CLI.", no_args_is_help=True)

keys_app = typer.Typer(help="Manage partner API keys.")
app.add_typer(keys_app, name="keys")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}",
        level=level,
    )


def _load_config() -> SyncConfig:
    try:
        config = load_sync_config_from_env()
    except ValueError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=2) from e
    _configure_logging(config.log_level)
    return config


def _open_db(config: SyncConfig) -> DB:
    db = DB(config.database_url)
    db.create_schema()
    return db


def _print_progress(progress: SyncProgress) -> None:
    match progress:
        case DiscoveryProgress():
            typer.echo(
                f"[discovery {progress.current_key}/{progress.total_keys}] "
                f"{progress.message} ({progress.discovered_dates} dates)"
            )
        case PopulateProgress():
            typer.echo(
                f"[populate {progress.completed_tasks}/{progress.total_tasks}] "
                f"{progress.records_fetched} records, "
                f"{progress.failed_tasks} failed"
            )
        case AggregatesProgress():
            typer.echo(f"[aggregates {progress.percent}%] {progress.message}")
        case CompleteProgress():
            typer.echo(
                f"{progress.message}: {progress.completed_tasks} tasks, "
                f"{progress.records_fetched} records"
            )
        case CancelledProgress():
            typer.echo(
                f"{progress.message} after {progress.completed_tasks}/"
                f"{progress.total_tasks} tasks; run `salesync resume` to continue",
                err=True,
            )
        case ErrorProgress():
            typer.echo(f"{progress.message}: {progress.error}", err=True)


async def _run_cancellable(
    run: Callable[[CancelToken], Awaitable[SyncResult]],
) -> SyncResult:
    """Run a sync with Ctrl+C wired to the cancel token."""
    token = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        # Not supported on this platform or not on the main thread.
        pass
    try:
        return await run(token)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _execute_sync(*, resume: bool) -> None:
    config = _load_config()
    db = _open_db(config)
    orchestrator = create_sync_orchestrator(config=config, db=db)
    api_keys = db.list_api_keys()

    if not resume and not api_keys:
        typer.echo("No API keys configured. Add one with `salesync keys add`.")
        raise typer.Exit(code=1)

    async def run(token: CancelToken) -> SyncResult:
        if resume:
            return await orchestrator.resume_sync(api_keys, _print_progress, token)
        return await orchestrator.run_sync(api_keys, _print_progress, token)

    try:
        asyncio.run(_run_cancellable(run))
    except SyncCancelledError as e:
        raise typer.Exit(code=130) from e
    except Exception as e:
        raise typer.Exit(code=1) from e


@app.command("init-db")
def init_db() -> None:
    """Create the database schema."""
    config = _load_config()
    _open_db(config)
    typer.echo(f"Initialized database at {config.database_url}")


@keys_app.command("add")
def keys_add(
    key_id: str = typer.Argument(..., help="Identifier for the key"),
    secret: str = typer.Option(
        ..., prompt=True, hide_input=True, help="Partner API key secret"
    ),
    name: str | None = typer.Option(None, help="Display name"),
) -> None:
    """Add or replace a partner API key."""
    db = _open_db(_load_config())
    info = db.add_api_key(key_id=key_id, secret=secret, display_name=name)
    typer.echo(f"Added {info.label} ({info.id})")


@keys_app.command("list")
def keys_list() -> None:
    """List configured API keys."""
    db = _open_db(_load_config())
    api_keys = db.list_api_keys()
    if not api_keys:
        typer.echo("No API keys configured.")
        return
    highwatermarks = {key.id: db.get_highwatermark(key.id) for key in api_keys}
    for key in api_keys:
        typer.echo(
            f"{key.id}\t{key.label}\thighwatermark={highwatermarks[key.id]}"
        )


@keys_app.command("rename")
def keys_rename(
    key_id: str,
    name: str | None = typer.Argument(None, help="New display name; omit to clear"),
) -> None:
    """Change the display name of an API key."""
    db = _open_db(_load_config())
    info = db.rename_api_key(key_id, name)
    if info is None:
        typer.echo(f"No API key with id {key_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Renamed {key_id} to {info.label}")


@keys_app.command("remove")
def keys_remove(key_id: str) -> None:
    """Remove an API key with its tasks, sales and highwatermark."""
    db = _open_db(_load_config())
    if not MaintenanceTool(db, AggregateService(db)).remove_key(key_id):
        typer.echo(f"No API key with id {key_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {key_id}")


@app.command("sync")
def sync() -> None:
    """Discover changed dates, fetch them, and rebuild aggregates."""
    _execute_sync(resume=False)


@app.command("resume")
def resume() -> None:
    """Continue an interrupted sync without re-running discovery."""
    _execute_sync(resume=True)


@app.command("reset")
def reset(
    key_id: str | None = typer.Option(
        None, "--key", help="Only clear data synced for this API key"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation"),
) -> None:
    """Delete synced data so the next sync refetches it from scratch."""
    db = _open_db(_load_config())
    tool = MaintenanceTool(db, AggregateService(db))

    if key_id is None:
        if not yes:
            typer.confirm("Delete all synced data? API keys are kept.", abort=True)
        deleted = tool.reset_all()
        typer.echo(f"Cleared all synced data ({deleted} records)")
        return

    if key_id not in {key.id for key in db.list_api_keys()}:
        typer.echo(f"No API key with id {key_id}", err=True)
        raise typer.Exit(code=1)
    if not yes:
        typer.confirm(f"Delete all synced data for {key_id}?", abort=True)
    deleted = tool.reset_key(key_id)
    typer.echo(f"Cleared {deleted} records for {key_id}")


@app.command("status")
def status() -> None:
    """Show queued task counts per API key."""
    db = _open_db(_load_config())
    task_queue = TaskQueueStore(db)
    counts = task_queue.status_counts()
    typer.echo(
        f"pending={counts.pending} completed={counts.completed} "
        f"failed={counts.failed}"
    )
    for api_key_id, pending in sorted(task_queue.count_pending_tasks().items()):
        typer.echo(f"  {api_key_id}: {pending} pending")
    typer.echo(f"records={db.count_records()}")


@app.command("summary")
def summary(
    limit: int = typer.Option(10, help="Number of apps and countries to show"),
) -> None:
    """Print the precomputed aggregates."""
    db = _open_db(_load_config())
    aggregates = AggregateService(db)
    metrics = aggregates.global_metrics()
    if metrics is None:
        typer.echo("No aggregates yet. Run `salesync sync` first.")
        return

    typer.echo(
        f"Units: sold={metrics.gross_sold} returned={metrics.gross_returned} "
        f"activated={metrics.gross_activated} total={metrics.grand_total} "
        f"({metrics.total_records} records)"
    )
    typer.echo("Top apps:")
    for app_row in aggregates.apps()[:limit]:
        typer.echo(
            f"  {app_row.app_name}: ${app_row.total_revenue:,.2f} "
            f"{app_row.total_units} units"
        )
    typer.echo("Top countries:")
    for country in aggregates.countries()[:limit]:
        typer.echo(
            f"  {country.country_code}: ${country.total_revenue:,.2f} "
            f"{country.total_units} units"
        )


def main() -> None:
    app()
