################################################################################
# DOCKVAULT
#
# @file:        disaster_recovery_commands.py
# @module:      dockvault.commands
# @description: Disaster recovery command
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""Disaster recovery commands."""

from typing import Optional

import typer

from ..cores.disaster_recovery_manager import DisasterRecoveryManager
from ..errors import InterruptedDuringMutation, LockUnavailable
from ..helpers import get_logger
from ..helpers.ui_utils import (
    confirm_action,
    print_error,
    print_info,
    print_next_steps,
    print_panel,
    print_success,
    print_warning,
    require_root,
)
from .context import ensure_config, get_backend, get_runtime, start_operation_log

logger = get_logger(__name__)


def cmd_disaster_recovery(
    ctx: typer.Context,
    backup_id: Optional[str] = None,
    source: Optional[str] = None,
    yes: bool = False,
):
    """Rebuild the host from a backup."""
    require_root("disaster-recovery")
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "disaster-recovery")
    manager = DisasterRecoveryManager(cfg, get_runtime(ctx), get_backend(ctx))

    print_panel(
        "[bold]Complete system restoration[/bold]\n\n"
        "- Restore data from backup (local or remote)\n"
        f"- Recreate Docker network {manager.network}\n"
        "- Deploy Portainer in bootstrap mode\n"
        "- Write a checklist for restoring application stacks\n\n"
        "[yellow]Only run this on a clean system or when all containers are lost.[/yellow]",
        title="DISASTER RECOVERY MODE",
        style="red",
    )
    if not yes and not confirm_action("Do you want to proceed?"):
        print_info("Disaster recovery cancelled")
        raise typer.Exit(code=0)
    logger.info("User confirmed disaster recovery")

    try:
        report = manager.run(backup_id=backup_id, source=source)
    except LockUnavailable as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    except InterruptedDuringMutation as e:
        print_error(str(e))
        raise typer.Exit(code=128 + e.signum)

    if not report.success:
        for error in report.errors:
            print_error(error)
        raise typer.Exit(code=1)

    print_success(f"Data restored from backup {report.restore.backup_id}")
    print_success(f"Network {manager.network} " + ("created" if report.network_created else "already present"))
    print_success(f"Portainer running: {manager.portainer_url()}")
    if report.proxy_data_found:
        print_success(f"Reverse proxy data found: {manager.npm_dir}")
    else:
        print_warning(f"No reverse proxy data at {manager.npm_dir}, fresh setup required")

    print_next_steps([
        f"Open Portainer at {manager.portainer_url()} and log in",
        f"Work through {report.checklist_path}",
        "Recreate application stacks via Portainer",
        "Restore SSL/proxy configuration",
        "Run: dockvault health",
    ])


def register(app: typer.Typer):
    """Register disaster recovery command."""

    @app.command("disaster-recovery")
    def _dr_cmd(
        ctx: typer.Context,
        backup_id: Optional[str] = typer.Argument(None, help="Backup ID (default: latest)."),
        source: Optional[str] = typer.Option(
            None, "--source", "-s", help="local or remote (default: remote if configured)."
        ),
        yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    ):
        """
        Full host recovery: restore data, network, Portainer, checklist.

        Application stacks are not started; redeploy them through Portainer.
        """
        cmd_disaster_recovery(ctx, backup_id, source, yes)
