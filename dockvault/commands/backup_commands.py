################################################################################
# DOCKVAULT
#
# @file:        backup_commands.py
# @module:      dockvault.commands
# @description: backup, transfer, prune and list commands
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""Backup commands."""

from typing import Optional

import typer
from rich.progress import Progress, SpinnerColumn, TextColumn

from ..cores.backup_manager import BackupManager
from ..errors import DockvaultError, InterruptedDuringMutation, LockUnavailable
from ..helpers import SystemUtils, get_logger
from ..helpers.ui_utils import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_success,
    print_warning,
    require_root,
)
from ..types import BackupResult, PruneResult
from .context import ensure_backend, ensure_config, get_backend, get_runtime, start_operation_log

logger = get_logger(__name__)


# -------------------------
# Output helpers
# -------------------------

def _print_backup_result(result: BackupResult) -> None:
    table = create_table(f"Backup {result.backup_id}",
                         [("Archive", "cyan"), ("Size", "white"), ("SHA-256", "dim")])
    for archive in result.archives:
        table.add_row(archive.archive_path.name, SystemUtils.format_bytes(archive.size_bytes),
                      archive.checksum[:16])
    console.print(table)

    for source in result.skipped_sources:
        print_warning(f"Skipped missing source: {source}")
    if result.resume_failures:
        print_warning(f"Containers not restarted: {', '.join(result.resume_failures)}")
    for error in result.errors:
        print_error(error)


def _print_prune_result(label: str, result: PruneResult) -> None:
    print_info(f"{label}: kept {len(result.kept)}, deleted {len(result.deleted)}")
    if result.denied:
        print_warning(f"{label}: {len(result.denied)} delete(s) denied by store policy "
                      f"(kept: {', '.join(result.denied)})")


# -------------------------
# Commands
# -------------------------

def cmd_backup(ctx: typer.Context, transfer: bool = True, prune: bool = True):
    """Create a local backup, then transfer and apply retention."""
    require_root("backup")
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "backup")
    manager = BackupManager(cfg, get_runtime(ctx))

    print_header("Docker Backup", f"Sources: {', '.join(str(s) for s in cfg.sources)}")
    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      console=console, transient=True) as progress:
            progress.add_task("Stopping containers and archiving data...", total=None)
            result = manager.create_backup()
    except LockUnavailable as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    except InterruptedDuringMutation as e:
        print_error(str(e))
        raise typer.Exit(code=128 + e.signum)

    _print_backup_result(result)
    if not result.success:
        print_error(f"Backup {result.backup_id} failed and was discarded")
        raise typer.Exit(code=1)
    print_success(f"Backup {result.backup_id} completed in "
                  f"{SystemUtils.format_duration(result.duration_seconds)}")

    if prune:
        _print_prune_result("Local retention", manager.prune_local())

    backend = get_backend(ctx) if transfer else None
    if backend is None:
        return

    transfer_result = manager.transfer(backend, result.backup_id)
    if not transfer_result.success:
        print_warning(f"Local backup {result.backup_id} is valid")
        print_error(f"Transfer failed: {transfer_result.error}")
        raise typer.Exit(code=1)
    print_success(f"Transferred to {transfer_result.location}")

    if prune:
        _print_prune_result("Remote retention", manager.prune_remote(backend))


def cmd_transfer(ctx: typer.Context, backup_id: Optional[str] = None, prune: bool = False):
    """Push an existing local backup (default: latest) to the remote store."""
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "transfer")
    backend = ensure_backend(ctx)
    manager = BackupManager(cfg, get_runtime(ctx))

    print_info(f"Target: {backend.describe()}")
    result = manager.transfer(backend, backup_id)
    if not result.success:
        print_error(f"Transfer failed: {result.error}")
        raise typer.Exit(code=1)
    print_success(f"Backup {result.backup_id} transferred to {result.location}")

    if prune:
        _print_prune_result("Remote retention", manager.prune_remote(backend))


def cmd_prune(ctx: typer.Context, keep: Optional[int] = None, local: bool = True, remote: bool = True):
    """Apply keep-last-N retention."""
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "prune")
    manager = BackupManager(cfg, get_runtime(ctx))

    if local:
        try:
            _print_prune_result("Local retention", manager.prune_local(keep))
        except LockUnavailable as e:
            print_error(str(e))
            raise typer.Exit(code=1)
        except OSError as e:
            print_error(f"Local retention failed: {e}")
            raise typer.Exit(code=1)

    backend = get_backend(ctx) if remote else None
    if backend is not None:
        _print_prune_result("Remote retention", manager.prune_remote(backend, keep))


def cmd_list(ctx: typer.Context, remote: bool = False):
    """List available backups, newest first."""
    cfg = ensure_config(ctx)
    manager = BackupManager(cfg, get_runtime(ctx))

    if remote:
        backend = ensure_backend(ctx)
        try:
            ids = backend.list_backups()
            latest = backend.latest()
        except DockvaultError as e:
            print_error(f"Cannot list remote backups: {e}")
            raise typer.Exit(code=1)
        title = f"Remote backups ({backend.describe()})"
    else:
        ids = manager.list_local()
        latest = manager.latest_local()
        title = f"Local backups ({cfg.backup_root})"

    if not ids:
        print_warning("No backups found")
        return

    table = create_table(title, [("Backup ID", "cyan"), ("Date", "white"), ("Size", "white"), ("", "green")])
    for backup_id in ids:
        date = f"{backup_id[0:4]}-{backup_id[4:6]}-{backup_id[6:8]} " \
               f"{backup_id[9:11]}:{backup_id[11:13]}:{backup_id[13:15]}"
        size = "-" if remote else SystemUtils.format_bytes(
            SystemUtils.directory_size(cfg.backup_root / backup_id))
        table.add_row(backup_id, date, size, "latest" if backup_id == latest else "")
    console.print(table)
    print_info(f"{len(ids)} backup(s)")


def register(app: typer.Typer):
    """Register backup commands."""

    @app.command("backup")
    def _backup_cmd(
        ctx: typer.Context,
        no_transfer: bool = typer.Option(False, "--no-transfer", help="Only create the local backup."),
        no_prune: bool = typer.Option(False, "--no-prune", help="Skip retention after the backup."),
    ):
        """Stop containers, archive data, restart, then transfer and prune."""
        cmd_backup(ctx, transfer=not no_transfer, prune=not no_prune)

    @app.command("transfer")
    def _transfer_cmd(
        ctx: typer.Context,
        backup_id: Optional[str] = typer.Argument(None, help="Backup ID (default: latest)."),
        prune: bool = typer.Option(False, "--prune", help="Apply remote retention afterwards."),
    ):
        """Transfer a local backup to the remote store."""
        cmd_transfer(ctx, backup_id, prune)

    @app.command("prune")
    def _prune_cmd(
        ctx: typer.Context,
        keep: Optional[int] = typer.Option(None, "--keep", min=0, help="Override the configured keep count."),
        local_only: bool = typer.Option(False, "--local-only", help="Only prune local backups."),
        remote_only: bool = typer.Option(False, "--remote-only", help="Only prune remote backups."),
    ):
        """Delete backups beyond the retention count."""
        cmd_prune(ctx, keep, local=not remote_only, remote=not local_only)

    @app.command("list")
    def _list_cmd(
        ctx: typer.Context,
        remote: bool = typer.Option(False, "--remote", "-r", help="List remote backups."),
    ):
        """List backups."""
        cmd_list(ctx, remote)
