"""Restore command."""

from typing import Optional

import typer

from ..cores.restore_manager import SOURCE_LOCAL, SOURCE_REMOTE, RestoreManager
from ..errors import DockvaultError, InterruptedDuringMutation, LockUnavailable
from ..helpers import get_logger
from ..helpers.ui_utils import (
    confirm_action,
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_next_steps,
    print_panel,
    print_success,
    print_warning,
    prompt_choice,
    require_root,
)
from ..types import RestorePhase, RestoreSession
from .context import ensure_config, get_backend, get_runtime, start_operation_log

logger = get_logger(__name__)


def _choose_source(manager: RestoreManager, source: Optional[str]) -> str:
    sources = manager.list_sources()
    if source:
        if source not in sources:
            print_error(f"Source '{source}' not available (choose: {', '.join(sources)})")
            raise typer.Exit(code=1)
        return source
    if len(sources) == 1:
        return sources[0]
    return prompt_choice("Restore from", sources, default=SOURCE_LOCAL)


def _choose_backup(manager: RestoreManager, source: str) -> str:
    try:
        ids = manager.list_backups(source)
        latest = manager.latest(source)
    except DockvaultError as e:
        print_error(f"Cannot list {source} backups: {e}")
        raise typer.Exit(code=1)
    if not ids:
        print_error(f"No {source} backups found")
        raise typer.Exit(code=1)

    table = create_table(f"Available {source} backups", [("#", "dim"), ("Backup ID", "cyan"), ("", "green")])
    for i, backup_id in enumerate(ids, 1):
        table.add_row(str(i), backup_id, "latest" if backup_id == latest else "")
    console.print(table)

    return prompt_choice("Backup ID", ids, default=latest or ids[0])


def _confirm(session: RestoreSession) -> bool:
    print_panel(
        f"Backup:  [bold]{session.backup_id}[/bold] ({session.source})\n\n"
        "All running containers will be stopped.\n"
        "Current data directories are renamed to *.old and replaced.",
        title="Restore",
        style="yellow",
    )
    return confirm_action("This will replace current data.")


def _print_session(session: RestoreSession) -> None:
    if session.safety_backup_dir:
        print_info(f"Safety backup: {session.safety_backup_dir}")
    for root, old in session.relocated.items():
        print_info(f"Previous data: {root} -> {old}")
    if session.ownership_applied:
        print_info(f"Ownership restored for {session.ownership_applied} entries")
    if session.resume_failures:
        print_warning(f"Containers not restarted: {', '.join(session.resume_failures)}")
    for error in session.errors:
        print_error(error)


def cmd_restore(
    ctx: typer.Context,
    backup_id: Optional[str] = None,
    source: Optional[str] = None,
    yes: bool = False,
    include_system_configs: bool = False,
):
    """Restore a backup (interactive unless an id and --yes are given)."""
    require_root("restore")
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "restore")
    manager = RestoreManager(cfg, get_runtime(ctx), get_backend(ctx))

    print_header("Docker Restore")
    source = _choose_source(manager, source)
    if backup_id is None and not yes:
        backup_id = _choose_backup(manager, source)

    try:
        session = manager.restore(
            backup_id=backup_id,
            source=source,
            include_system_configs=include_system_configs,
            confirm=None if yes else _confirm,
        )
    except LockUnavailable as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    except InterruptedDuringMutation as e:
        print_error(f"{e}; containers were restarted, previous data is kept as *.old")
        raise typer.Exit(code=128 + e.signum)

    _print_session(session)
    if session.phase == RestorePhase.ABORTED:
        print_warning("Restore aborted, nothing was changed")
        raise typer.Exit(code=1)
    if not session.success:
        print_error(f"Restore of {session.backup_id} finished with errors")
        raise typer.Exit(code=1)

    print_success(f"Restore of {session.backup_id} completed")
    print_next_steps([
        "Check your services: docker ps",
        "Remove the *.old directories once everything works",
        "Run: dockvault health",
    ])


def register(app: typer.Typer):
    """Register restore command."""

    @app.command("restore")
    def _restore_cmd(
        ctx: typer.Context,
        backup_id: Optional[str] = typer.Argument(None, help="Backup ID (default: choose / latest)."),
        source: Optional[str] = typer.Option(
            None, "--source", "-s", help=f"Where to restore from: {SOURCE_LOCAL} or {SOURCE_REMOTE}."
        ),
        yes: bool = typer.Option(False, "--yes", "-y", help="No prompts (unattended)."),
        include_system_configs: bool = typer.Option(
            False, "--include-system-configs", help="Also unpack the system config archive."
        ),
    ):
        """Restore a backup."""
        cmd_restore(ctx, backup_id, source, yes, include_system_configs)
