"""Command-line interface with Rich formatting."""

import asyncio
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm
import structlog

from . import __version__
from .config import create_example_config, load_settings
from .database import DatabaseManager
from .models import Side, SyncDirection
from .prompts import ConfirmationGate, ConsoleGate
from .services import SnapshotCalendarService
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()

DIRECTIONS = [d.value for d in SyncDirection]


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _snapshot_services(settings, left: str, right: str):
    left_service = SnapshotCalendarService(
        Side.LEFT, calendar_id=settings.left_calendar_id, path=Path(left)
    )
    right_service = SnapshotCalendarService(
        Side.RIGHT, calendar_id=settings.right_calendar_id, path=Path(right)
    )
    return left_service, right_service


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """CalSync Reconcile - keep two calendar collections in step.

    LEFT and RIGHT are JSON snapshot files of the two collections. Links
    between items are stored in the items themselves, so a snapshot can be
    synced again at any time.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('left', type=click.Path(exists=True, dir_okay=False))
@click.argument('right', type=click.Path(exists=True, dir_okay=False))
@click.option('--dry-run', '-n', is_flag=True,
              help='Show what would be synced without making changes')
@click.option('--direction', '-d', type=click.Choice(DIRECTIONS),
              help='Override the configured sync direction')
@async_command
async def sync(ctx, left, right, dry_run, direction):
    """Synchronize the LEFT and RIGHT snapshot files."""
    settings = ctx.obj['settings']
    if direction:
        settings.sync_policy.direction = SyncDirection(direction)

    if dry_run:
        console.print("[yellow]Running in dry-run mode - no changes will be made[/yellow]")

    left_service, right_service = _snapshot_services(settings, left, right)
    gate = ConsoleGate(console, auto_answer=True if settings.enable_auto_retry else None)

    try:
        async with SyncEngine(
            settings, left_service, right_service, gate=gate, db_manager=DatabaseManager(settings)
        ) as sync_engine:
            console.print("🚀 Synchronizing calendars...")
            sync_report = await sync_engine.sync(dry_run=dry_run)

        if not dry_run:
            left_service.flush()
            right_service.flush()

        if sync_report.cancelled:
            console.print("[yellow]Sync cancelled, changes made so far were kept[/yellow]")
        else:
            console.print("✅ Sync completed")
        _display_sync_results(sync_report)

        if sync_report.errors:
            console.print(Panel(
                "\n".join(f"• {error}" for error in sync_report.errors),
                title="[red]Errors[/red]",
                border_style="red"
            ))

    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.argument('left', type=click.Path(exists=True, dir_okay=False))
@click.argument('right', type=click.Path(exists=True, dir_okay=False))
@click.option('--direction', '-d', type=click.Choice(DIRECTIONS),
              help='Override the configured sync direction')
@async_command
async def preview(ctx, left, right, direction):
    """Show how LEFT and RIGHT match up and what would change."""
    settings = ctx.obj['settings']
    if direction:
        settings.sync_policy.direction = SyncDirection(direction)

    left_service, right_service = _snapshot_services(settings, left, right)
    try:
        async with SyncEngine(settings, left_service, right_service, gate=ConfirmationGate()) as sync_engine:
            for write_direction in settings.sync_policy.direction.write_directions():
                left_items = await left_service.list_events()
                right_items = await right_service.list_events()
                match = sync_engine.match_events(left_items, right_items, write_direction)
                _display_match(write_direction, match)

                for pair in match.paired:
                    result = sync_engine.diff_pair(pair[0], pair[1], write_direction)
                    if result.mutations:
                        console.print(Panel(
                            "\n".join(result.change_log),
                            title=result.target.summary_line(),
                            border_style="cyan"
                        ))
    except Exception as e:
        console.print(f"[red]Preview failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--limit', '-l', default=10, type=int, help='Number of sessions to show')
@click.pass_context
def history(ctx, limit):
    """Show recent sync sessions."""
    settings = ctx.obj['settings']

    try:
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        with db_manager.get_session() as session:
            sessions = db_manager.get_recent_sync_sessions(session, limit=limit)
    except Exception as e:
        console.print(f"[red]Failed to read sync history: {e}[/red]")
        sys.exit(1)

    if not sessions:
        console.print("[yellow]No sync sessions recorded yet[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Recent Syncs")
    table.add_column("Started", style="cyan")
    table.add_column("Direction")
    table.add_column("Status")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Errors", justify="center", style="red")

    for s in sessions:
        status = f"{s.status} (dry run)" if s.dry_run else s.status
        table.add_row(
            s.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            s.direction,
            status,
            str(s.created),
            str(s.updated),
            str(s.deleted),
            str(s.error_count),
        )
    console.print(table)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


def _display_match(direction, match):
    """Display the match buckets of one pass."""
    table = Table(show_header=True, header_style="bold magenta", title=f"Matching ({direction.value})")
    table.add_column("Bucket", style="cyan")
    table.add_column("Items", justify="center")

    table.add_row("Paired", str(len(match.paired)))
    table.add_row("To delete", str(len(match.delete_candidates(direction))))
    table.add_row("To create", str(len(match.create_candidates(direction))))
    table.add_row("Reclaimed", str(len(match.reclaimed)))
    table.add_row("Kept (merge)", str(len(match.merged)))
    table.add_row("Deletions suppressed", str(match.suppressed_deletions))
    table.add_row("Unreadable", str(len(match.skipped)), style="dim")
    console.print(table)


def _display_sync_results(sync_report):
    """Display sync results."""
    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Direction", style="cyan")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Reclaimed", justify="center")
    table.add_column("Skipped", justify="center", style="dim")

    table.add_row(
        sync_report.direction.value,
        str(sync_report.created),
        str(sync_report.updated),
        str(sync_report.deleted),
        str(sync_report.reclaimed),
        str(sync_report.skipped),
    )
    console.print(table)

    if sync_report.completed_at:
        duration = (sync_report.completed_at - sync_report.started_at).total_seconds()
        console.print(f"Completed in {duration:.1f}s, {sync_report.total_operations} operations")

    for line in sync_report.changes:
        console.print(f"  {line}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
