"""Health and connectivity commands."""

from typing import List

import typer
from rich.markup import escape

from ..cores.health_manager import ConnectivityProber, HealthReporter
from ..helpers import get_logger
from ..helpers.ui_utils import console, create_table, print_error, print_success
from ..types import CheckResult, CheckStatus
from .context import ensure_backend, ensure_config, get_backend, get_runtime, start_operation_log

logger = get_logger(__name__)

STATUS_LABELS = {
    CheckStatus.OK: "[green]✓ ok[/green]",
    CheckStatus.WARN: "[yellow]⚠ warn[/yellow]",
    CheckStatus.FAIL: "[red]✗ fail[/red]",
    CheckStatus.SKIP: "[dim]- skip[/dim]",
}


def print_checks(title: str, checks: List[CheckResult]) -> bool:
    table = create_table(title, [("Check", "cyan"), ("Status", "white"), ("Details", "white")])
    for check in checks:
        table.add_row(check.name, STATUS_LABELS[check.status], escape(check.message))
    console.print(table)
    return all(check.ok for check in checks)


def cmd_health(ctx: typer.Context):
    """Show backup system health."""
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "health")
    reporter = HealthReporter(cfg, get_runtime(ctx), get_backend(ctx))

    if not print_checks("Backup System Health", reporter.run_checks()):
        print_error("Health check failed")
        raise typer.Exit(code=1)
    print_success("All checks passed")


def cmd_test_connectivity(ctx: typer.Context):
    """Probe the configured remote store."""
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "connectivity")
    backend = ensure_backend(ctx)

    checks = ConnectivityProber(cfg, backend).probe()
    if not print_checks(f"Connectivity: {backend.describe()}", checks):
        print_error("Connectivity test failed")
        raise typer.Exit(code=1)
    print_success("Remote store reachable")


def register(app: typer.Typer):
    """Register health commands."""

    @app.command("health")
    def _health_cmd(ctx: typer.Context):
        """Status of backups, logs, disk, Docker and the remote store."""
        cmd_health(ctx)

    @app.command("test-connectivity")
    def _test_connectivity_cmd(ctx: typer.Context):
        """Check VPN and remote store reachability."""
        cmd_test_connectivity(ctx)
