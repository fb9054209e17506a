"""Command Line Interface for Clinical-Sync.

This module provides a Typer CLI for operating the record store outside
the HTTP API: schema setup, user creation, listing records, running a
sync, reading the audit trail and reconciling sync status with it.

Security Impact:
    - Passwords are prompted with hidden input and never echoed
    - CLI actions are audited under the ``system`` actor
"""

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from clinsync import __version__
from clinsync.api.logging_config import setup_logging
from clinsync.domain.enums import AuditAction, EntityType, SyncOutcome, SyncStatus, UserRole
from clinsync.domain.models import AuditFilters
from clinsync.domain.ports import ClinicalSyncError, ValidationError
from clinsync.infrastructure.settings import settings
from clinsync.main import ApplicationContainer, build_container

app = typer.Typer(
    name="clinsync",
    help="Clinical-Sync: clinical record entry with offline capture and REDCap sync",
    add_completion=False
)
console = Console()

STATUS_STYLES = {
    SyncStatus.PENDING: "yellow",
    SyncStatus.SYNCED: "green",
    SyncStatus.ERROR: "red",
}


def create_container_cli() -> ApplicationContainer:
    """Build the application container (CLI wrapper)."""
    try:
        return build_container()
    except ClinicalSyncError as e:
        console.print(f"[red]✗[/red] Failed to initialize storage: {e.message}")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]✗[/red] Invalid configuration: {str(e)}")
        raise typer.Exit(code=1)


def close_container(container: ApplicationContainer) -> None:
    asyncio.run(container.shutdown())


def print_error(error: ClinicalSyncError) -> None:
    console.print(f"[red]✗[/red] {error.message}")
    if isinstance(error, ValidationError):
        for item in error.details.get("errors", []):
            console.print(f"  • {item['field']}: {item['message']}")


@app.command("init-db")
def init_db() -> None:
    """Create the database schema and the default accounts (if enabled)."""
    container = create_container_cli()
    try:
        users = container.service.list_users()
        console.print(f"[green]✓[/green] Database ready ({container.config.get_database_config().db_type})")
        console.print(f"  Users: {len(users)}")
    finally:
        close_container(container)


@app.command("create-user")
def create_user(
    email: str = typer.Argument(..., help="Login email"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, confirmation_prompt=True,
                                 help="Initial password (at least 6 characters)"),
    role: UserRole = typer.Option(UserRole.RESEARCHER, "--role", "-r", help="Access role"),
) -> None:
    """Create a user account.

    Examples:
        clinsync create-user jane@clinic.com --role administrator
    """
    container = create_container_cli()
    try:
        user = container.service.create_user({"email": email, "password": password, "role": role})
        console.print(f"[green]✓[/green] Created {user.role.value} {user.email} (id {user.id})")
    except ClinicalSyncError as e:
        print_error(e)
        raise typer.Exit(code=1)
    finally:
        close_container(container)


@app.command("list-records")
def list_records(
    status: Optional[SyncStatus] = typer.Option(None, "--status", "-s", help="Filter by sync status"),
) -> None:
    """List patient records, newest first."""
    container = create_container_cli()
    try:
        records = container.service.list_patient_records(status=status)
        if not records:
            console.print("[dim]No records found[/dim]")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("ID", justify="right")
        table.add_column("Patient ID", style="cyan")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("REDCap ID")
        table.add_column("Created")
        for record in records:
            style = STATUS_STYLES[record.sync_status]
            table.add_row(
                str(record.id),
                record.patient_external_id,
                f"{record.first_name} {record.last_name}",
                f"[{style}]{record.sync_status.value}[/{style}]",
                record.external_record_id or "-",
                record.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)

        stats = container.service.sync_stats()
        console.print(
            f"\nTotal {stats.total}: [yellow]{stats.pending} pending[/yellow], "
            f"[green]{stats.synced} synced[/green], [red]{stats.errors} error[/red]"
        )
    finally:
        close_container(container)


@app.command()
def sync(
    record_id: Optional[int] = typer.Option(None, "--record-id", "-i", help="Sync one record instead of all pending"),
) -> None:
    """Push pending records to REDCap.

    Examples:
        clinsync sync
        clinsync sync --record-id 12
    """
    container = create_container_cli()
    try:
        if record_id is not None:
            try:
                result = asyncio.run(container.service.sync_patient_record(record_id))
            except ClinicalSyncError as e:
                print_error(e)
                raise typer.Exit(code=1)
            if result.outcome in (SyncOutcome.SYNCED, SyncOutcome.ALREADY_SYNCED):
                console.print(f"[green]✓[/green] Record {record_id} synced as {result.external_record_id}")
                return
            console.print(f"[red]✗[/red] Record {record_id}: {result.outcome.value} ({result.reason})")
            raise typer.Exit(code=1)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Syncing pending records...", total=None)
            summary = asyncio.run(container.service.sync_all_pending())
            progress.update(task, completed=True)

        console.print("\n[bold]Sync Summary:[/bold]")
        summary_table = Table(show_header=False, box=None, padding=(0, 2))
        summary_table.add_row("Attempted:", f"[bold]{summary.attempted}[/bold]")
        summary_table.add_row("Synced:", f"[green]{summary.succeeded}[/green]")
        summary_table.add_row("Failed:", f"[red]{summary.failed}[/red]" if summary.failed else "0")
        summary_table.add_row("Skipped:", str(summary.skipped))
        console.print(summary_table)

        for result in summary.results:
            if result.outcome == SyncOutcome.FAILED:
                console.print(f"  [red]•[/red] record {result.record_id}: {result.reason}")

        if summary.failed:
            raise typer.Exit(code=1)
    finally:
        close_container(container)


@app.command()
def audit(
    action: Optional[AuditAction] = typer.Option(None, "--action", "-a", help="Filter by action"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by actor email (substring)"),
    entity_type: Optional[EntityType] = typer.Option(None, "--entity-type", help="Filter by entity type"),
    entity_id: Optional[str] = typer.Option(None, "--entity-id", help="Filter by entity id"),
    date_from: Optional[str] = typer.Option(None, "--from", help="Start date (YYYY-MM-DD, inclusive)"),
    date_to: Optional[str] = typer.Option(None, "--to", help="End date (YYYY-MM-DD, inclusive)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of entries"),
) -> None:
    """Show audit entries, newest first."""
    container = create_container_cli()
    try:
        try:
            filters = AuditFilters(
                action=action,
                actor_email=user,
                entity_type=entity_type,
                entity_id=entity_id,
                date_from=date_from,
                date_to=date_to,
                limit=limit,
            )
        except ValueError as e:
            console.print(f"[red]✗[/red] Invalid filter: {str(e)}")
            raise typer.Exit(code=1)

        entries = container.service.query_audit_log(filters)
        if not entries:
            console.print("[dim]No audit entries found[/dim]")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("When")
        table.add_column("Actor", style="cyan")
        table.add_column("Action")
        table.add_column("Entity")
        table.add_column("Changes")
        for entry in entries:
            changes = ", ".join(
                f"{name}: {change.from_value!r} → {change.to_value!r}" for name, change in entry.changes.items()
            )
            if entry.reason:
                changes = f"{changes} ({entry.reason})" if changes else entry.reason
            table.add_row(
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                entry.actor_email,
                entry.action.value,
                entry.entity_label or f"{entry.entity_type.value} {entry.entity_id}",
                changes,
            )
        console.print(table)
    finally:
        close_container(container)


@app.command("audit-stats")
def audit_stats() -> None:
    """Show audit log statistics."""
    container = create_container_cli()
    try:
        stats = container.service.audit_stats()
        info_table = Table(show_header=False, box=None, padding=(0, 2))
        info_table.add_row("Total entries:", f"[bold]{stats.total_entries:,}[/bold]")
        info_table.add_row("Last 24 hours:", f"{stats.last_24h:,}")
        info_table.add_row("Last 7 days:", f"{stats.last_7d:,}")
        console.print(info_table)

        for title, counts in (("Actions", stats.actions), ("Users", stats.users)):
            if not counts:
                continue
            table = Table(title=title, show_header=False)
            for key, count in sorted(counts.items(), key=lambda item: -item[1]):
                table.add_row(key, str(count))
            console.print(table)
    finally:
        close_container(container)


@app.command()
def reconcile(
    repair: bool = typer.Option(False, "--repair", help="Append the missing audit entries"),
) -> None:
    """Find records whose sync status has no matching audit entry."""
    container = create_container_cli()
    try:
        discrepancies = container.service.reconcile(repair=repair)
        if not discrepancies:
            console.print("[green]✓[/green] Sync status and audit trail agree")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Record", justify="right")
        table.add_column("Patient ID", style="cyan")
        table.add_column("Status")
        table.add_column("Last audited")
        table.add_column("Expected")
        table.add_column("Repaired")
        for item in discrepancies:
            table.add_row(
                str(item.record_id),
                item.patient_external_id,
                item.sync_status.value,
                item.last_audited_action.value if item.last_audited_action else "-",
                item.expected_action.value,
                "yes" if item.repaired else "no",
            )
        console.print(table)
        if not repair:
            console.print(f"\n[yellow]⚠[/yellow] {len(discrepancies)} discrepancies (run with --repair to fix)")
            raise typer.Exit(code=1)
        console.print(f"\n[green]✓[/green] Repaired {len(discrepancies)} discrepancies")
    finally:
        close_container(container)


@app.command()
def info() -> None:
    """Display system information and configuration."""
    config = settings.config_manager
    db_config = config.get_database_config()
    redcap = config.get_redcap_config()
    sync_config = config.get_sync_config()

    console.print("[bold blue]System Information[/bold blue]\n")
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{settings.app_name} v{__version__}")
    info_table.add_row("Database Type:", db_config.db_type)
    if db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", db_config.db_path or ":memory:")
    info_table.add_row("REDCap Endpoint:", redcap.api_url or "[yellow]not configured (scripted client)[/yellow]")
    info_table.add_row("REDCap Token:", "set" if redcap.is_configured else "not set")
    info_table.add_row("Sync Timeout:", f"{redcap.timeout_seconds:.0f}s")
    info_table.add_row("Bulk Sync Concurrency:", str(sync_config.max_concurrency))
    info_table.add_row("Connectivity Probe:", f"every {sync_config.connectivity_interval_seconds:.0f}s")
    console.print(info_table)


@app.command()
def serve(
    host: str = typer.Option(settings.api_host, "--host", help="Bind address"),
    port: int = typer.Option(settings.api_port, "--port", help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn
    console.print(f"[green]✓[/green] Serving on http://{host}:{port} (docs at /api/docs)")
    uvicorn.run("clinsync.api.main:app", host=host, port=port, reload=reload, log_level="info")


def version_callback(value: bool) -> None:
    if value:
        console.print(f"Clinical-Sync v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(False, "--version", callback=version_callback, is_eager=True,
                                 help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Clinical-Sync: clinical record entry with offline capture and REDCap sync."""
    setup_logging(log_level="DEBUG" if verbose else "WARNING", stream=sys.stderr)
    if verbose:
        logging.getLogger(__name__).debug("Verbose logging enabled")


if __name__ == "__main__":
    app()
