"""
CLI interface for Carbon Tracker.

Provides the session hooks and command-line access to local accounting and
remote sync.
"""

import logging
import os
import sqlite3
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from carbon_tracker.cli.hook_input import (
    SessionEndHookInput,
    StatuslineInput,
    StopHookInput,
    read_hook_input,
)
from carbon_tracker.config.loader import Settings, load_settings
from carbon_tracker.core.accounting import backfill_sessions, identifier_resolver, record_session
from carbon_tracker.core.carbon import (
    build_cost_model,
    calculate_carbon_from_tokens,
    calculate_equivalents,
    format_co2,
    format_energy,
)
from carbon_tracker.core.project_identifier import PROJECT_NAME_KEY, short_hash
from carbon_tracker.storage.models import EMPTY_STATS
from carbon_tracker.storage.repository import get_total_co2, open_store, query_readonly
from carbon_tracker.sync.auth import CredentialManager
from carbon_tracker.sync.errors import AuthenticationError
from carbon_tracker.sync.orchestrator import (
    batch_sync_if_enabled,
    disable_sync,
    enable_sync,
    get_sync_config,
    sync_session_if_enabled,
    sync_unsynced_sessions,
)
from carbon_tracker.sync.transport import RemoteTransport

app = typer.Typer()
console = Console()
logger = logging.getLogger("carbon_tracker.cli")

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

LOG_FORMAT = "[carbon-tracker] %(levelname)s %(name)s: %(message)s"


def _configure_logging(verbose: bool) -> None:
    """Log to stderr; stdout is reserved for command output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


def _load(ctx: typer.Context) -> Settings:
    return load_settings(ctx.obj.get("config_path"), environ=os.environ)


def _settings_or_exit(ctx: typer.Context) -> Settings:
    try:
        return _load(ctx)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        raise typer.Exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging on stderr"
    )
):
    """Carbon Tracker CLI."""
    _configure_logging(verbose)
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("Carbon Tracker - Use --help to see available commands")


@app.command()
def init(
    ctx: typer.Context,
    backfill: bool = typer.Option(
        False,
        "--backfill",
        help="Import historical sessions of the current project"
    )
):
    """Initialize the local carbon database."""
    settings = _settings_or_exit(ctx)
    try:
        with open_store(settings.database_path) as store:
            store.set_installed_at()
            console.print(f"[green]✓[/] Database initialized at {settings.database_path}")
            if backfill:
                count = backfill_sessions(
                    store, os.getcwd(), settings.projects_dir, build_cost_model(settings.carbon)
                )
                console.print(f"  Backfilled {count} historical session(s)")
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        raise typer.Exit(EXIT_CODE_FAIL)


@app.command()
def record(ctx: typer.Context):
    """
    Record the current session (stop hook).

    Reads the hook payload from stdin, saves the session's accounting row and
    syncs it in the background if sync is enabled. Always exits 0 so the
    host is never blocked.
    """
    hook_input = read_hook_input(sys.stdin.read(), StopHookInput)
    if hook_input is None:
        logger.info("No hook input received, skipping")
        raise typer.Exit(EXIT_CODE_PASS)

    try:
        settings = _load(ctx)
        transcript = Path(hook_input.transcript_path) if hook_input.transcript_path else None
        row = record_session(
            settings,
            hook_input.session_id,
            log_path=transcript,
            project_path=hook_input.raw_project_path,
        )
        if row is not None:
            sync_session_if_enabled(settings, row.session_id)
    except Exception as e:
        logger.error("Failed to record session %s: %s", hook_input.session_id, e)

    raise typer.Exit(EXIT_CODE_PASS)


@app.command("sync-session")
def sync_session_command(ctx: typer.Context):
    """
    Sync the ended session and any older unsynced sessions (session-end hook).

    Always exits 0.
    """
    hook_input = read_hook_input(sys.stdin.read(), SessionEndHookInput)
    try:
        settings = _load(ctx)
        if hook_input is not None:
            sync_session_if_enabled(settings, hook_input.session_id)
        batch_sync_if_enabled(settings)
    except Exception as e:
        logger.error("Background sync failed: %s", e)

    raise typer.Exit(EXIT_CODE_PASS)


def statusline_text(settings: Settings, status: StatuslineInput) -> str:
    """Session CO2 from the live token counts plus the all-time stored total.

    Returns an empty string when there is nothing to show.
    """
    usage = status.usage
    counts = (
        usage.input_tokens or 0,
        usage.output_tokens or 0,
        usage.cache_creation_input_tokens or 0,
        usage.cache_read_input_tokens or 0,
    )
    total_co2 = get_total_co2(settings.database_path)
    total_suffix = f" · total: {format_co2(total_co2)}" if total_co2 > 0 else ""

    if sum(counts) == 0:
        return f"session: 0g{total_suffix} CO2" if total_suffix else ""

    carbon = calculate_carbon_from_tokens(
        *counts, model=status.model_id, cost_model=build_cost_model(settings.carbon)
    )
    return f"session: {format_co2(carbon.co2_grams)}{total_suffix} CO2"


@app.command()
def statusline(ctx: typer.Context):
    """
    Print the status bar line (status-line command).

    Reads the status payload from stdin and prints one line to stdout, empty
    when there is nothing to show. Always exits 0.
    """
    text = ""
    status = read_hook_input(sys.stdin.read(), StatuslineInput)
    if status is not None:
        try:
            text = statusline_text(_load(ctx), status)
        except Exception as e:
            logger.error("Status line failed: %s", e)

    typer.echo(text)
    raise typer.Exit(EXIT_CODE_PASS)


@app.command()
def sync(ctx: typer.Context):
    """Sync all unsynced sessions to the remote service."""
    settings = _settings_or_exit(ctx)
    with open_store(settings.database_path) as store:
        if get_sync_config(store) is None:
            console.print("[yellow]Sync is not enabled.[/] Run `carbon-tracker enable-sync` first.")
            raise typer.Exit(EXIT_CODE_PASS)

        pending = store.count_unsynced_sessions()
        if pending == 0:
            console.print("[green]✓[/] All sessions are already synced")
            raise typer.Exit(EXIT_CODE_PASS)

        console.print(f"Syncing {pending} session(s)...")
        with RemoteTransport(settings.api) as transport:
            try:
                synced = sync_unsynced_sessions(
                    store,
                    transport,
                    CredentialManager(store, transport),
                    batch_size=settings.sync.batch_size,
                    pause=settings.sync.batch_pause_seconds,
                )
            except AuthenticationError as e:
                console.print(f"[red]Authentication failed:[/] {e}")
                raise typer.Exit(EXIT_CODE_FAIL)

        remaining = store.count_unsynced_sessions()

    console.print(f"[green]✓[/] Synced {synced} session(s)")
    if remaining:
        console.print(f"[yellow]{remaining} session(s) still pending; they will be retried[/]")


@app.command()
def status(ctx: typer.Context):
    """Show totals and sync state."""
    settings = _settings_or_exit(ctx)
    db_path = settings.database_path

    stats = query_readonly(db_path, lambda store: store.get_aggregate_stats(), default=EMPTY_STATS)
    if stats.total_sessions == 0:
        console.print("No sessions recorded yet")
        raise typer.Exit(EXIT_CODE_PASS)

    identity = query_readonly(db_path, get_sync_config)
    pending = query_readonly(db_path, lambda store: store.count_unsynced_sessions(), default=0)

    console.print("\n[bold]Carbon Tracker Status[/bold]")
    console.print("-" * 40)
    console.print(f"Sessions: {stats.total_sessions}")
    console.print(f"Tokens: {stats.total_tokens:,}")
    console.print(f"Energy: {format_energy(stats.total_energy_wh)}")
    console.print(f"CO2: {format_co2(stats.total_co2_grams)}")
    if identity:
        console.print(f"Sync: enabled as \"{identity.user_name}\" ({pending} pending)")
    else:
        console.print("Sync: disabled")


@app.command()
def report(
    ctx: typer.Context,
    days: int = typer.Option(
        7,
        "--days",
        "-d",
        min=1,
        help="Number of days to include"
    ),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Limit the daily breakdown to one project identifier"
    )
):
    """Show daily and per-project emissions for the last N days."""
    settings = _settings_or_exit(ctx)
    db_path = settings.database_path

    daily = query_readonly(db_path, lambda store: store.get_daily_stats(days, project), default=[])
    if not daily:
        console.print(f"No sessions in the last {days} day(s)")
        raise typer.Exit(EXIT_CODE_PASS)

    projects = query_readonly(db_path, lambda store: store.get_project_stats(days), default=[])

    daily_table = Table(title=f"Daily emissions (last {days} days)")
    daily_table.add_column("Date")
    daily_table.add_column("Sessions", justify="right")
    daily_table.add_column("Tokens", justify="right")
    daily_table.add_column("Energy", justify="right")
    daily_table.add_column("CO2", justify="right")
    for day in daily:
        daily_table.add_row(
            day.date, str(day.sessions), f"{day.tokens:,}",
            format_energy(day.energy_wh), format_co2(day.co2_grams)
        )
    console.print(daily_table)

    if not project:
        project_table = Table(title="By project")
        project_table.add_column("Project")
        project_table.add_column("Sessions", justify="right")
        project_table.add_column("CO2", justify="right")
        for entry in projects:
            project_table.add_row(
                entry.project_identifier or "(unknown)", str(entry.sessions), format_co2(entry.co2_grams)
            )
        console.print(project_table)

    total_co2 = sum(day.co2_grams for day in daily)
    equivalents = calculate_equivalents(total_co2)
    console.print(f"\nTotal: {format_co2(total_co2)} CO2, about:")
    console.print(f"  {equivalents.km_driven:.2f} km driven")
    console.print(f"  {equivalents.phone_charges:.1f} phone charges")
    console.print(f"  {equivalents.led_light_hours:.1f} LED bulb hours")
    console.print(f"  {equivalents.cups_of_coffee:.1f} cups of coffee")


@app.command("enable-sync")
def enable_sync_command(
    ctx: typer.Context,
    user_name: Optional[str] = typer.Option(
        None,
        "--user-name",
        "-n",
        help="Display name shown on the remote dashboard"
    ),
    backfill: bool = typer.Option(
        False,
        "--backfill",
        help="Import and sync existing sessions instead of skipping them"
    )
):
    """
    Enable syncing sessions to the remote service.

    Without --backfill, sessions recorded before sync was first enabled are
    marked as synced so only new sessions are uploaded.
    """
    settings = _settings_or_exit(ctx)
    with open_store(settings.database_path) as store:
        identity, is_new = enable_sync(store, user_name)
        console.print(f"[green]✓[/] Sync enabled as \"{identity.user_name}\" (id: {identity.user_id[:8]}...)")

        if backfill:
            imported = backfill_sessions(
                store, os.getcwd(), settings.projects_dir, build_cost_model(settings.carbon)
            )
            console.print(f"  Backfilled {imported} historical session(s)")
            with RemoteTransport(settings.api) as transport:
                try:
                    synced = sync_unsynced_sessions(
                        store,
                        transport,
                        CredentialManager(store, transport),
                        batch_size=settings.sync.batch_size,
                        pause=settings.sync.batch_pause_seconds,
                    )
                except AuthenticationError as e:
                    console.print(f"[red]Authentication failed:[/] {e}")
                    raise typer.Exit(EXIT_CODE_FAIL)
            console.print(f"  Synced {synced} session(s)")
        elif is_new:
            store.mark_all_synced()
            console.print("  Existing sessions marked as synced (not backfilling)")


@app.command("disable-sync")
def disable_sync_command(ctx: typer.Context):
    """Stop syncing sessions. The anonymous identity is kept."""
    settings = _settings_or_exit(ctx)
    with open_store(settings.database_path) as store:
        disable_sync(store)
    console.print("[green]✓[/] Sync disabled")


@app.command("rename-project")
def rename_project(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(
        None,
        "--name",
        help="Custom project name"
    ),
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Remove the custom name and use the git or local identifier"
    ),
    path: Optional[str] = typer.Option(
        None,
        "--path",
        help="Project directory (defaults to the current directory)"
    )
):
    """Change the project name used in identifiers and update stored sessions."""
    if not reset and not name:
        console.print("[red]Error:[/] provide --name NAME or --reset")
        raise typer.Exit(EXIT_CODE_FAIL)

    settings = _settings_or_exit(ctx)
    raw_path = path or os.getcwd()
    project_hash = short_hash(raw_path)

    with open_store(settings.database_path) as store:
        resolve = identifier_resolver(store)
        old_identifier = resolve(raw_path)

        if reset:
            store.delete_project_config(project_hash, PROJECT_NAME_KEY)
        else:
            store.set_project_config(project_hash, PROJECT_NAME_KEY, name.strip())

        new_identifier = resolve(raw_path)
        if new_identifier == old_identifier:
            console.print(f"Project is already \"{new_identifier}\", no changes needed")
            raise typer.Exit(EXIT_CODE_PASS)

        updated = store.rename_project_identifier(old_identifier, new_identifier)

    console.print(
        f"[green]✓[/] Renamed project from \"{old_identifier}\" to \"{new_identifier}\" "
        f"({updated} session(s) updated)"
    )


@app.command("remove-project")
def remove_project(
    ctx: typer.Context,
    path: Optional[str] = typer.Option(
        None,
        "--path",
        help="Project directory (defaults to the current directory)"
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation"
    )
):
    """Delete all locally stored sessions of a project."""
    settings = _settings_or_exit(ctx)
    raw_path = path or os.getcwd()

    with open_store(settings.database_path) as store:
        identifier = identifier_resolver(store)(raw_path)
        if not yes and not typer.confirm(f"Delete all sessions of \"{identifier}\"?"):
            raise typer.Exit(EXIT_CODE_PASS)

        deleted = store.delete_project_sessions(identifier)
        store.delete_project_config(short_hash(raw_path), PROJECT_NAME_KEY)

    console.print(f"[green]✓[/] Removed {deleted} session(s) of \"{identifier}\"")


if __name__ == "__main__":
    app()
