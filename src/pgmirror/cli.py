"""
Command-line interface for pgmirror.
"""

import asyncio
import signal
import sys
from contextlib import suppress
from functools import wraps
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import MirrorConfig, SyncConfig, TableSyncConfig, setup_logging
from .database.connection import ConnectionConfig, DatabaseManager
from .driver import ReconciliationDriver, ReconciliationReport
from .exceptions import ConfigurationError, MirrorError
from .sync.counter import RowCounter, UNKNOWN_COUNT
from .sync.reconciler import TableStatus


console = Console()

# Exit status when --strict is given and the run recorded failures
EXIT_FAILURES = 2

STATUS_STYLES = {
    TableStatus.IN_SYNC: "green",
    TableStatus.COPIED: "green",
    TableStatus.PARTIAL: "yellow",
    TableStatus.FAILED: "red",
    TableStatus.SKIPPED: "dim",
    TableStatus.DRY_RUN: "cyan",
}


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except MirrorError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {e}")
            if "--debug" in sys.argv:
                import traceback
                traceback.print_exc()
            sys.exit(1)
    return wrapper


def _load_config(ctx: click.Context, path: str) -> MirrorConfig:
    mirror_config = MirrorConfig.from_yaml(path)
    setup_logging(mirror_config.logging, debug=ctx.obj.get("debug", False))
    return mirror_config


def config_option(func):
    return click.option(
        "--config",
        "-c",
        type=click.Path(exists=True),
        required=True,
        help="Configuration file path",
    )(func)


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """pgmirror: schema and data reconciliation between two PostgreSQL databases."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="pgmirror.yaml",
    help="Output configuration file path",
)
@handle_errors
def init(output: str):
    """Initialize a new pgmirror configuration file."""
    if Path(output).exists():
        if not click.confirm(f"Configuration file {output} already exists. Overwrite?"):
            return

    _create_default_config().to_yaml(output)
    console.print(f"[green]✓[/green] Configuration file created: {output}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Set SOURCE_* and TARGET_* environment variables or edit the file")
    console.print(f"2. Run: pgmirror test-connection -c {output}")
    console.print(f"3. Run: pgmirror run -c {output} --dry-run")


@main.command()
@config_option
@handle_errors
def validate_config(config: str):
    """Validate configuration file."""
    console.print(f"Validating configuration: {config}")

    try:
        mirror_config = MirrorConfig.from_yaml(config)
        mirror_config.validate_config()
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] Configuration error: {e}")
        sys.exit(1)

    console.print("[green]✓[/green] Configuration is valid")
    _display_config_summary(mirror_config)


@main.command()
@config_option
@click.option(
    "--store",
    type=click.Choice(["source", "target", "both"]),
    default="both",
    help="Which store to test",
)
@click.pass_context
@handle_errors
def test_connection(ctx, config: str, store: str):
    """Test connections to the source and target stores."""
    mirror_config = _load_config(ctx, config)
    names = ["source", "target"] if store == "both" else [store]

    async def run_connection_tests():
        results = {}
        async with DatabaseManager() as manager:
            for name in names:
                manager.add_database(name, getattr(mirror_config, name))
                results[name] = await manager.test_connection(name)
        return results

    results = asyncio.run(run_connection_tests())

    failed = 0
    for name in names:
        result = results[name]
        label = getattr(mirror_config, name).display_name
        if result["status"] == "connected":
            console.print(f"[green]✓[/green] {name} ({label}): connected as {result['user']}")
            console.print(f"    {result['version'].split(',')[0]}")
        else:
            console.print(f"[red]✗[/red] {name} ({label}): {result['error']}")
            failed += 1

    if failed:
        sys.exit(1)


@main.command()
@config_option
@click.pass_context
@handle_errors
def schema_status(ctx, config: str):
    """Show schema differences between source and target."""
    mirror_config = _load_config(ctx, config)

    async def run_diff():
        async with DatabaseManager() as manager:
            driver = _build_driver(manager, mirror_config)
            await driver.connect()
            source_tables, target_tables = await driver.inspect()
            return driver.differ.diff(source_tables, target_tables)

    diff = asyncio.run(run_diff())

    if diff.is_empty:
        console.print("[green]✓[/green] Target has every source table and column")
    else:
        table = Table(title="Pending schema changes")
        table.add_column("Table", style="cyan")
        table.add_column("Change", style="magenta")
        for missing in diff.missing_tables:
            table.add_row(missing.table_name, f"create table ({len(missing.columns)} columns)")
        for table_name, columns in diff.missing_columns.items():
            for column in columns:
                table.add_row(table_name, f"add column {column}")
        console.print(table)

    for mismatch in diff.type_mismatches:
        console.print(f"[yellow]![/yellow] {mismatch}")
    if diff.extra_tables:
        console.print(f"[dim]Only on target: {', '.join(diff.extra_tables)}[/dim]")
    for table_name, columns in diff.extra_columns.items():
        console.print(f"[dim]Only on target: {table_name}.{', '.join(columns)}[/dim]")


@main.command()
@config_option
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show the statements without executing them",
)
@click.pass_context
@handle_errors
def schema_reconcile(ctx, config: str, dry_run: bool):
    """Create missing tables and columns on the target."""
    mirror_config = _load_config(ctx, config)
    if dry_run:
        mirror_config.sync.dry_run = True
        console.print("[yellow]Dry run mode - no changes will be made[/yellow]")

    async def run_schema():
        async with DatabaseManager() as manager:
            driver = _build_driver(manager, mirror_config)
            return await driver.reconcile_schema()

    diff, changes = asyncio.run(run_schema())

    if not changes:
        console.print("[green]✓[/green] No schema changes needed")
        return

    for change in changes:
        if change.has_error:
            console.print(f"[red]✗[/red] {change.description}: {change.error}")
        elif change.executed:
            console.print(f"[green]✓[/green] {change.description}")
        else:
            console.print(f"[cyan]•[/cyan] {change.description}")
            console.print(change.sql, style="dim", markup=False)

    if any(c.has_error for c in changes):
        sys.exit(1)


@main.command()
@config_option
@click.option(
    "--table",
    "-t",
    "tables",
    multiple=True,
    help="Table to count (repeatable; defaults to configured tables)",
)
@click.pass_context
@handle_errors
def counts(ctx, config: str, tables: Tuple[str, ...]):
    """Show row counts on both stores."""
    mirror_config = _load_config(ctx, config)
    schema = mirror_config.sync.schema_name

    async def run_counts():
        async with DatabaseManager() as manager:
            driver = _build_driver(manager, mirror_config)
            await driver.connect()
            names = list(tables) or mirror_config.table_names
            if not names:
                source_tables, _ = await driver.inspect()
                names = [t.table_name for t in source_tables]
            source_counts = await RowCounter(driver.source, schema).count_rows(names)
            target_counts = await RowCounter(driver.target, schema).count_rows(names)
            return names, source_counts, target_counts

    names, source_counts, target_counts = asyncio.run(run_counts())

    table = Table(title="Row counts")
    table.add_column("Table", style="cyan")
    table.add_column("Source", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("", justify="center")
    for name in names:
        source_count = source_counts[name]
        target_count = target_counts[name]
        if UNKNOWN_COUNT in (source_count, target_count):
            marker = "[red]?[/red]"
        elif source_count == target_count:
            marker = "[green]=[/green]"
        else:
            marker = "[yellow]≠[/yellow]"
        table.add_row(name, _format_count(source_count), _format_count(target_count), marker)
    console.print(table)


@main.command()
@config_option
@click.option(
    "--table",
    "-t",
    "tables",
    multiple=True,
    help="Table to reconcile (repeatable; overrides the configured list)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without making changes",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    help="Write the JSON report to this file",
)
@click.option(
    "--strict",
    is_flag=True,
    help=f"Exit with status {EXIT_FAILURES} when the report records failures",
)
@click.pass_context
@handle_errors
def run(ctx, config: str, tables: Tuple[str, ...], dry_run: bool, output: Optional[str], strict: bool):
    """Reconcile schema and data between source and target."""
    mirror_config = _load_config(ctx, config)
    if dry_run:
        mirror_config.sync.dry_run = True
        console.print("[yellow]Dry run mode - no changes will be made[/yellow]")

    requested = list(tables) if tables else list(mirror_config.tables)
    if not requested:
        raise ConfigurationError(
            "No tables to reconcile: list them under 'tables' in the configuration or pass --table"
        )

    console.print(
        f"[blue]Reconciling[/blue] {mirror_config.source.display_name} "
        f"⇄ {mirror_config.target.display_name}"
    )

    async def run_reconciliation():
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        _install_cancel_handler(loop, cancel_event)
        try:
            async with DatabaseManager() as manager:
                driver = _build_driver(manager, mirror_config)
                return await driver.run(requested, cancel_event)
        finally:
            with suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)

    report = asyncio.run(run_reconciliation())

    _display_report(report)

    if output:
        Path(output).write_text(report.to_json(), encoding="utf-8")
        console.print(f"\nReport written to {output}")

    if strict and report.has_failures:
        sys.exit(EXIT_FAILURES)


def _install_cancel_handler(loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event) -> None:
    """First Ctrl-C stops after the current table; a second one aborts."""

    def request_cancel():
        console.print(
            "\n[yellow]Stopping after the current table, press Ctrl-C again to abort[/yellow]"
        )
        cancel_event.set()
        loop.remove_signal_handler(signal.SIGINT)

    with suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, request_cancel)


def _build_driver(manager: DatabaseManager, config: MirrorConfig) -> ReconciliationDriver:
    source = manager.add_database("source", config.source)
    target = manager.add_database("target", config.target)
    return ReconciliationDriver.from_config(config, source, target)


def _format_count(count: int) -> str:
    return "unknown" if count == UNKNOWN_COUNT else f"{count:,}"


def _create_default_config() -> MirrorConfig:
    """Create a default configuration."""
    return MirrorConfig(
        source=ConnectionConfig(
            host="${SOURCE_HOST}",
            port=5432,
            database="${SOURCE_DB}",
            user="${SOURCE_USER}",
            password="${SOURCE_PASSWORD}",
            ssl_mode="disable",
        ),
        target=ConnectionConfig(
            host="${TARGET_HOST}",
            port=5432,
            database="${TARGET_DB}",
            user="${TARGET_USER}",
            password="${TARGET_PASSWORD}",
            ssl_mode="require",
            connect_retries=3,
        ),
        tables=[
            "clients",
            "projects",
            TableSyncConfig(name="quotes", mode="source_to_target"),
        ],
        sync=SyncConfig(),
    )


def _display_config_summary(config: MirrorConfig):
    """Display a summary of the configuration."""
    console.print("\n[blue]Configuration Summary[/blue]")

    stores = Table(title="Stores")
    stores.add_column("Role", style="cyan")
    stores.add_column("Host", style="magenta")
    stores.add_column("Database", style="green")
    stores.add_column("SSL", style="yellow")
    for role in ("source", "target"):
        store = getattr(config, role)
        stores.add_row(role, f"{store.host}:{store.port}", store.database, store.ssl_mode)
    console.print(stores)

    sync = config.sync
    console.print(
        f"Schema: {sync.schema_name}  Batch size: {sync.batch_size}  "
        f"Statement timeout: {sync.statement_timeout}s  On conflict: {sync.conflict_strategy}"
    )

    tables = Table(title="Tables")
    tables.add_column("Table", style="cyan")
    tables.add_column("Mode", style="magenta")
    for table in config.tables:
        tables.add_row(table.name, table.mode)
    console.print(tables)


def _display_report(report: ReconciliationReport):
    """Print the per-table outcome and totals of a run."""
    changes = report.schema_changes
    if changes:
        applied = sum(1 for c in changes if c.executed)
        console.print(
            f"\nSchema changes: {applied}/{len(changes)} applied, "
            f"{report.schema_changes_failed} failed"
        )
        for change in changes:
            if change.has_error:
                console.print(f"  [red]✗[/red] {change.description}: {change.error}")

    table = Table(title="Data reconciliation")
    table.add_column("Table", style="cyan")
    table.add_column("Status")
    table.add_column("Direction")
    table.add_column("Source", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Copied", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Note")
    for result in report.tables:
        style = STATUS_STYLES.get(result.status, "white")
        table.add_row(
            result.table_name,
            f"[{style}]{result.status.value}[/{style}]",
            result.direction.value,
            _format_count(result.source_count),
            _format_count(result.target_count),
            str(result.rows_copied),
            str(result.rows_failed),
            result.skipped_reason or (result.errors[0] if result.errors else ""),
        )
    console.print(table)

    mismatches = report.verification_mismatches
    if report.verification:
        if mismatches:
            console.print(f"[yellow]Counts still differ for: {', '.join(mismatches)}[/yellow]")
        else:
            console.print("[green]✓[/green] Verification: all counts match")

    if report.cancelled:
        console.print("[yellow]Run cancelled; completed tables are kept[/yellow]")

    console.print(
        f"\n[bold]{report.total_rows_copied}[/bold] rows copied, "
        f"[bold]{report.total_rows_failed}[/bold] failed, "
        f"{report.tables_failed} table(s) failed, {report.tables_skipped} skipped "
        f"in {report.elapsed_seconds:.1f}s"
    )


if __name__ == "__main__":
    main()
