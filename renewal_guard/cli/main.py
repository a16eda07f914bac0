"""
CLI interface for Renewal Guard.

Operator access to record creation, schedule edits, version comparison,
migration, rollback, statistics and reminder windows.
"""

import logging
import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from renewal_guard.config.loader import EngineConfig, load_engine_config
from renewal_guard.core.migration import (
    DEFAULT_BATCH_REASON,
    MigrationManager,
    VersionComparison,
    utc_now,
)
from renewal_guard.core.reconciler import assign_initial_renewal, reconcile_schedule_change
from renewal_guard.core.reminders import due_cancellation_reminders, due_renewal_reminders
from renewal_guard.core.schedule import CalculationVersion, RecurrenceSchedule
from renewal_guard.storage.models import BillingRecord, RecordStatus
from renewal_guard.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _config(ctx: typer.Context) -> EngineConfig:
    return ctx.obj or EngineConfig()


def _manager(ctx: typer.Context) -> MigrationManager:
    config = _config(ctx)
    return MigrationManager(
        get_repository(config.database_path),
        significant_difference_days=config.significant_difference_days
    )


def _parse_datetime(value: str) -> datetime:
    """Parse an ISO 8601 timestamp that must carry a UTC offset."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"'{value}' is not an ISO 8601 date")
    if parsed.tzinfo is None:
        raise typer.BadParameter(
            f"'{value}' has no UTC offset (e.g. 2025-01-31T00:00:00+00:00)"
        )
    return parsed


def _format_date(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else "-"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="RENEWAL_GUARD_DB",
        help="Path to the SQLite database (overrides the config file)"
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="RENEWAL_GUARD_CONFIG",
        help="Path to a YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Renewal Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        engine_config = load_engine_config(config) if config else EngineConfig()
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"could not load configuration: {e}")
    if db:
        engine_config = replace(engine_config, database_path=db)
    ctx.obj = engine_config

    if ctx.invoked_subcommand is None:
        console.print("Renewal Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Renewal Guard database."""
    try:
        initialize_schema(_config(ctx).database_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the billing record"),
    schedule: str = typer.Option(..., "--schedule", "-s", help="Daily, Weekly, Monthly, Quarterly or Annual"),
    status: str = typer.Option("Active", "--status", help="Active, Cancelled, Paused or Trial"),
    anchor: Optional[str] = typer.Option(None, "--anchor", "-a", help="Start date with UTC offset"),
    version: Optional[int] = typer.Option(None, "--calculation-version", help="Calculation version (1 or 2)")
):
    """Create a billing record; Active records get a renewal date."""
    config = _config(ctx)
    try:
        record = BillingRecord(
            name=name,
            schedule=RecurrenceSchedule.parse(schedule),
            status=RecordStatus.parse(status),
            anchor_date=_parse_datetime(anchor) if anchor else None,
            calculation_version=(
                CalculationVersion.parse(version)
                if version is not None
                else config.default_calculation_version
            )
        )
        record = assign_initial_renewal(record, utc_now())
        created = get_repository(config.database_path).create_record(record)
    except typer.BadParameter:
        raise
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Created record {created.id}")
    console.print(f"Renewal date: {_format_date(created.renewal_date)}")
    sys.exit(EXIT_CODE_PASS)


@app.command("set-schedule")
def set_schedule(
    ctx: typer.Context,
    record_id: int = typer.Argument(..., help="Record to change"),
    schedule: str = typer.Argument(..., help="New schedule")
):
    """Change a record's schedule, preserving its billing anniversary."""
    repository = get_repository(_config(ctx).database_path)
    try:
        record = repository.get_record(record_id)
        updated = reconcile_schedule_change(record, schedule, utc_now())
        if updated is record:
            console.print(f"Record {record_id} already uses {record.schedule.value}; nothing to do")
            sys.exit(EXIT_CODE_PASS)
        repository.save_record(updated, expected_version=record.calculation_version)
    except Exception as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Record {record_id} now renews {updated.schedule.value}")
    console.print(f"Renewal date: {_format_date(updated.renewal_date)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def compare(
    ctx: typer.Context,
    record_id: Optional[int] = typer.Option(
        None,
        "--record-id",
        "-r",
        help="Compare a single record instead of all records"
    )
):
    """Show renewal dates under version 1 and version 2 without changing anything."""
    manager = _manager(ctx)
    try:
        if record_id is not None:
            _display_comparison(manager.compare(record_id))
            sys.exit(EXIT_CODE_PASS)

        table = Table(title="V1 vs V2 renewal dates")
        table.add_column("ID", justify="right")
        table.add_column("Name")
        table.add_column("Schedule")
        table.add_column("V1 Date")
        table.add_column("V2 Date")
        table.add_column("Diff (days)", justify="right")
        for record in manager.repository.list_records():
            comparison = manager.compare(record.id)
            table.add_row(
                str(record.id),
                record.name if len(record.name) <= 18 else record.name[:15] + "...",
                record.schedule.value,
                comparison.v1_date.date().isoformat(),
                comparison.v2_date.date().isoformat(),
                f"{comparison.difference_days:.1f}"
            )
        console.print(table)
    except Exception as e:
        _fail(str(e))
    sys.exit(EXIT_CODE_PASS)


def _display_comparison(comparison: VersionComparison) -> None:
    console.print(f"\n[bold]Record {comparison.record_id} comparison[/bold]")
    console.print("-" * 40)
    console.print(f"V1 Date: {_format_date(comparison.v1_date)}")
    console.print(f"V2 Date: {_format_date(comparison.v2_date)}")
    console.print(f"Difference: {comparison.difference_days:.1f} days")


@app.command()
def migrate(
    ctx: typer.Context,
    record_id: Optional[int] = typer.Option(
        None,
        "--record-id",
        "-r",
        help="Migrate a single record instead of all version 1 records"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report differences without changing any record"
    ),
    reason: Optional[str] = typer.Option(
        None,
        "--reason",
        help="Reason stored in the audit log"
    )
):
    """Move records to the anniversary-preserving date calculation (version 2)."""
    manager = _manager(ctx)

    if record_id is None:
        console.print(f"Migrating all version 1 records (dry-run: {dry_run})...")
        report = manager.batch_migrate(dry_run=dry_run, reason=reason or DEFAULT_BATCH_REASON)
        console.print(
            f"Processed: {report.processed}  Migrated: {report.migrated}  "
            f"Significant differences: {len(report.flagged)}  Skipped: {report.skipped}"
        )
        for failed_id, message in report.failures:
            console.print(f"[yellow]Skipped record {failed_id}:[/] {message}")
        console.print("[green]✓[/] Batch migration completed")
        sys.exit(EXIT_CODE_PASS)

    try:
        if dry_run:
            _display_comparison(manager.compare(record_id))
            sys.exit(EXIT_CODE_PASS)
        entry = manager.migrate_one(record_id, reason or "Manual migration")
    except Exception as e:
        _fail(f"migration failed: {e}")

    if entry is None:
        console.print(f"Record {record_id} already uses version 2")
    else:
        console.print(f"[green]✓[/] Record {record_id} migrated to version 2")
        console.print(
            f"Renewal date: {_format_date(entry.old_renewal_date)} -> "
            f"{_format_date(entry.new_renewal_date)}"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def rollback(
    ctx: typer.Context,
    record_id: Optional[int] = typer.Option(
        None,
        "--record-id",
        "-r",
        help="Record to roll back"
    ),
    reason: str = typer.Option(
        "Manual rollback",
        "--reason",
        help="Reason stored in the audit log"
    )
):
    """Return a record to the legacy date calculation (version 1)."""
    if record_id is None:
        _fail("batch rollback is not supported for safety; use --record-id")

    try:
        entry = _manager(ctx).rollback_one(record_id, reason)
    except Exception as e:
        _fail(f"rollback failed: {e}")

    if entry is None:
        console.print(f"Record {record_id} already uses version 1")
    else:
        console.print(f"[green]✓[/] Record {record_id} rolled back to version 1")
        console.print(f"Renewal date: {_format_date(entry.new_renewal_date)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(ctx: typer.Context):
    """Print calculation version statistics."""
    try:
        result = _manager(ctx).stats()
    except Exception as e:
        _fail(str(e))

    console.print("\n[bold]Date Calculation Migration Statistics[/bold]")
    console.print("-" * 40)
    console.print(f"V1 records: {result.v1_count}")
    console.print(f"V2 records: {result.v2_count}")
    console.print(f"Audit entries: {result.total_audit_entries}")
    console.print(f"Rollbacks: {result.rollback_count}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reminders(
    ctx: typer.Context,
    mark_sent: bool = typer.Option(
        False,
        "--mark-sent",
        help="Record that reminders were sent for the listed dates"
    )
):
    """List records due a renewal or cancellation reminder."""
    config = _config(ctx)
    repository = get_repository(config.database_path)
    now = utc_now()
    try:
        records = repository.list_records()
        renewals = due_renewal_reminders(records, config.reminders.renewal_days, now)
        cancellations = due_cancellation_reminders(records, config.reminders.cancellation_days, now)
    except Exception as e:
        _fail(str(e))

    if not renewals and not cancellations:
        console.print("No reminders due")
        sys.exit(EXIT_CODE_PASS)

    for record, days in renewals:
        console.print(f"Renewal: {record.name} (#{record.id}) in {days} days on {_format_date(record.renewal_date)}")
        if mark_sent:
            repository.mark_renewal_reminder_sent(record.id, record.renewal_date)
    for record, days in cancellations:
        console.print(
            f"Cancellation: {record.name} (#{record.id}) in {days} days on "
            f"{_format_date(record.cancellation_date)}"
        )
        if mark_sent:
            repository.mark_cancellation_reminder_sent(record.id, record.cancellation_date)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
