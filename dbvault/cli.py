"""
dbvault CLI.

Commands:
    dbvault run           - Run the scheduler until SIGINT/SIGTERM
    dbvault backup        - Run one full backup cycle now
    dbvault list          - List ledger entries
    dbvault verify        - Decrypt a backup and check its checksum
    dbvault restore       - Restore a backup over the database
    dbvault delete        - Delete one backup and its ledger entry
    dbvault cleanup       - Apply retention and the capacity ceiling
    dbvault reconcile     - Compare the ledger with the backup directory
    dbvault generate-key  - Print a random encryption key
"""

import asyncio
import json
from pathlib import Path
from typing import NoReturn, Optional

import typer
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.table import Table

from dbvault.backup import (
    BackupError,
    BackupRecord,
    BackupScheduler,
    BackupService,
    RetentionManager,
)
from dbvault.backup.crypto import generate_key
from dbvault.backup.notifier import WebhookNotifier
from dbvault.config import Settings, get_settings
from dbvault.utils import format_size, setup_logging

app = typer.Typer(
    name="dbvault",
    help="Encrypted, scheduled SQLite backups",
    no_args_is_help=True,
)

console = Console()


def _load_settings() -> Settings:
    try:
        settings = get_settings()
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]).upper()
            console.print(f"  {field}: {err['msg']}")
        raise typer.Exit(2)
    setup_logging(settings)
    return settings


def _get_service(settings: Settings) -> BackupService:
    return BackupService(settings.to_backup_config())


def _fail(error: BackupError) -> NoReturn:
    console.print(f"[red]{error.kind}:[/red] {error}")
    raise typer.Exit(1)


def _records_table(records: list[BackupRecord]) -> Table:
    table = Table(box=box.SIMPLE)
    table.add_column("Filename", style="cyan")
    table.add_column("Created (UTC)")
    table.add_column("Size", justify="right")
    table.add_column("Checksum", style="dim")
    table.add_column("Flags")

    for record in records:
        flags = []
        if record.encrypted:
            flags.append("enc")
        if record.compressed:
            flags.append("zlib")
        table.add_row(
            record.filename,
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            format_size(record.size_bytes),
            record.checksum[:12],
            ",".join(flags),
        )
    return table


# =============================================================================
# SCHEDULER
# =============================================================================


@app.command()
def run() -> None:
    """Run the backup scheduler until interrupted."""
    from dbvault.main import main

    asyncio.run(main())


@app.command()
def backup(
    no_wait: bool = typer.Option(
        False, "--no-wait", help="Fail instead of waiting if a cycle is already running"
    ),
) -> None:
    """Run one full backup cycle (backup, retention, verify, capacity, reconcile)."""
    settings = _load_settings()

    async def _run():
        service = _get_service(settings)
        schedule_config = settings.to_schedule_config()
        scheduler = BackupScheduler(
            service,
            schedule_config,
            notifier=WebhookNotifier(
                schedule_config.notification_webhook,
                timeout=schedule_config.notification_timeout,
            ),
        )
        return await scheduler.perform_immediate_backup(wait=not no_wait)

    try:
        result = asyncio.run(_run())
    except BackupError as e:
        _fail(e)

    if not result.success:
        console.print(f"[red]{result.error_kind}:[/red] {result.message}")
        raise typer.Exit(1)

    console.print(f"[green]{result.message}[/green]")
    if result.record is not None:
        console.print(
            f"  {result.record.filename} ({format_size(result.record.size_bytes)})"
        )
    for name in result.removed:
        console.print(f"  [dim]removed {name}[/dim]")
    for name in result.dangling_records:
        console.print(f"  [yellow]missing artifact for {name}[/yellow]")


# =============================================================================
# LEDGER
# =============================================================================


@app.command("list")
def list_backups(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List recorded backups, oldest first."""
    settings = _load_settings()
    try:
        records = asyncio.run(_get_service(settings).list_backups())
    except BackupError as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps([r.to_dict() for r in records]))
        return

    if not records:
        console.print("[yellow]No backups recorded.[/yellow]")
        return

    console.print(_records_table(records))
    total = sum(r.size_bytes for r in records)
    console.print(f"[dim]{len(records)} backups, {format_size(total)}[/dim]")


@app.command()
def verify(
    filename: str = typer.Argument(..., help="Backup filename from `dbvault list`"),
) -> None:
    """Decrypt a backup and compare its checksum without touching the database."""
    settings = _load_settings()
    try:
        ok = asyncio.run(_get_service(settings).verify(filename))
    except BackupError as e:
        _fail(e)

    if not ok:
        console.print(f"[red]Verification failed:[/red] {filename}")
        raise typer.Exit(1)
    console.print(f"[green]Verified[/green] {filename}")


@app.command()
def restore(
    filename: str = typer.Argument(..., help="Backup filename from `dbvault list`"),
    target: Optional[Path] = typer.Option(
        None, "--target", "-t", help="Restore here instead of DATABASE_PATH"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Restore a backup. The target is replaced only after the checksum matches."""
    settings = _load_settings()
    destination = target or settings.database_path

    if not yes:
        typer.confirm(f"Replace {destination} with {filename}?", abort=True)

    try:
        asyncio.run(_get_service(settings).restore(filename, destination))
    except BackupError as e:
        _fail(e)
    console.print(f"[green]Restored[/green] {filename} -> {destination}")


@app.command()
def delete(
    filename: str = typer.Argument(..., help="Backup filename from `dbvault list`"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete one backup artifact and its ledger entry."""
    settings = _load_settings()
    if not yes:
        typer.confirm(f"Delete {filename}?", abort=True)

    try:
        asyncio.run(_get_service(settings).delete_backup(filename))
    except BackupError as e:
        _fail(e)
    console.print(f"[green]Deleted[/green] {filename}")


@app.command()
def cleanup() -> None:
    """Apply the retention window and the capacity ceiling."""
    settings = _load_settings()

    async def _run():
        service = _get_service(settings)
        retention = RetentionManager(service.store)
        async with service.lock.hold():
            expired = retention.apply_retention(service.config.retention_days)
            excess = retention.enforce_capacity(service.config.max_backups)
        return expired + excess

    try:
        removed = asyncio.run(_run())
    except BackupError as e:
        _fail(e)

    if not removed:
        console.print("[green]Nothing to remove.[/green]")
        return
    for record in removed:
        console.print(f"  [dim]removed {record.filename}[/dim]")
    console.print(f"[green]Removed {len(removed)} backups.[/green]")


@app.command()
def reconcile() -> None:
    """Delete orphaned files and report ledger entries whose artifact is missing."""
    settings = _load_settings()

    async def _run():
        service = _get_service(settings)
        async with service.lock.hold():
            return RetentionManager(service.store).reconcile()

    try:
        report = asyncio.run(_run())
    except BackupError as e:
        _fail(e)

    if report.clean:
        console.print("[green]Ledger and backup directory agree.[/green]")
        return
    for name in report.orphans_removed:
        console.print(f"  [dim]removed orphan {name}[/dim]")
    for name in report.dangling_records:
        console.print(f"  [yellow]missing artifact for {name}[/yellow]")
    if report.dangling_records:
        raise typer.Exit(1)


@app.command("generate-key")
def generate_key_command() -> None:
    """Print a random key suitable for BACKUP_ENCRYPTION_KEY."""
    typer.echo(generate_key())


if __name__ == "__main__":
    app()
