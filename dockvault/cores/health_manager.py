################################################################################
# DOCKVAULT
#
# @file:        health_manager.py
# @module:      dockvault.cores.health_manager
# @description: Status report and remote connectivity probes
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Health Reporter and Connectivity Prober.

Every check returns a ``CheckResult``; nothing here raises for an unhealthy
host. The CLI turns any FAIL into exit code 1.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from docker.errors import DockerException

from ..errors import DockvaultError
from ..helpers.config import Config
from ..helpers.constants import (
    BACKEND_NAS,
    BACKUP_ID_FORMAT,
    DEFAULT_DISK_WARN_PERCENT,
    DEFAULT_MAX_BACKUP_AGE_HOURS,
    HEALTH_LOG_ERROR_MARKERS,
    HEALTH_LOG_TAIL_LINES,
    LOG_FILE_TEMPLATE,
)
from ..helpers.logging import get_logger
from ..helpers.system_utils import SystemUtils
from ..helpers.ui_utils import run_command
from ..types import CheckResult, CheckStatus
from .backup_manager import resolve_latest
from .container_guard import DockerRuntime
from .retention import list_local_backups

logger = get_logger(__name__)


def backup_age_hours(backup_id: str, now: Optional[datetime] = None) -> float:
    created = datetime.strptime(backup_id, BACKUP_ID_FORMAT)
    return ((now or datetime.now()) - created).total_seconds() / 3600


def count_log_errors(log_file: Path, tail: int = HEALTH_LOG_TAIL_LINES) -> int:
    """Lines with an error marker among the last ``tail`` lines."""
    with open(log_file, encoding="utf-8", errors="replace") as f:
        last_lines = deque(f, maxlen=tail)
    return sum(
        1 for line in last_lines
        if any(marker in line.lower() for marker in HEALTH_LOG_ERROR_MARKERS)
    )


def check_vpn() -> CheckResult:
    if not SystemUtils.command_exists("tailscale"):
        return CheckResult("vpn", CheckStatus.FAIL, "tailscale is not installed")
    result = run_command(["tailscale", "status"], "tailscale status", check=False, timeout=15)
    if result.returncode == 0:
        return CheckResult("vpn", CheckStatus.OK, "tailscale connected")
    return CheckResult("vpn", CheckStatus.FAIL,
                       f"tailscale not connected: {(result.stderr or result.stdout).strip()}")


class HealthReporter:
    """
    Aggregated status of backups, logs, disk, Docker and the remote store.

    Args:
        config: Application configuration
        runtime: Container runtime adapter
        backend: Remote backend (None skips the remote check)
    """

    def __init__(self, config: Config, runtime: Optional[DockerRuntime] = None, backend=None):
        self.config = config
        self.runtime = runtime or DockerRuntime()
        self.backend = backend
        self.backup_root = config.backup_root
        self.max_age_hours = config.getint('health', 'max_backup_age_hours', DEFAULT_MAX_BACKUP_AGE_HOURS)
        self.disk_warn_percent = config.getint('health', 'disk_warn_percent', DEFAULT_DISK_WARN_PERCENT)
        self.vpn_enabled = config.getboolean('health', 'vpn_check', True)

    def run_checks(self) -> List[CheckResult]:
        checks = [
            self.check_vpn(),
            self.check_local_backups(),
            self.check_latest_pointer(),
            *self.check_logs(),
            self.check_disk(),
            self.check_docker(),
            self.check_remote(),
        ]
        failed = [c.name for c in checks if c.status == CheckStatus.FAIL]
        if failed:
            logger.warning(f"Health check failed: {', '.join(failed)}")
        else:
            logger.info("Health check passed")
        return checks

    def check_vpn(self) -> CheckResult:
        if not self.vpn_enabled:
            return CheckResult("vpn", CheckStatus.SKIP, "VPN check disabled")
        return check_vpn()

    def check_local_backups(self) -> CheckResult:
        ids = list_local_backups(self.backup_root)
        if not ids:
            return CheckResult("local_backups", CheckStatus.FAIL, f"No backups in {self.backup_root}")

        newest = ids[0]
        age = backup_age_hours(newest)
        details = {"count": str(len(ids)), "newest": newest, "age_hours": f"{age:.1f}"}
        if age > self.max_age_hours:
            return CheckResult("local_backups", CheckStatus.WARN,
                               f"Newest backup {newest} is {age:.0f}h old", details)
        return CheckResult("local_backups", CheckStatus.OK,
                           f"{len(ids)} backup(s), newest {newest} ({age:.1f}h ago)", details)

    def check_latest_pointer(self) -> CheckResult:
        latest = resolve_latest(self.backup_root)
        if latest is None:
            return CheckResult("latest", CheckStatus.WARN, "No valid 'latest' link")
        size = SystemUtils.format_bytes(SystemUtils.directory_size(self.backup_root / latest))
        return CheckResult("latest", CheckStatus.OK, f"latest -> {latest} ({size})")

    def check_logs(self) -> List[CheckResult]:
        log_dir = self.config.log_dir
        pattern = LOG_FILE_TEMPLATE.format(operation="*")
        log_files = sorted(log_dir.glob(pattern)) if log_dir.is_dir() else []
        if not log_files:
            return [CheckResult("logs", CheckStatus.SKIP, f"No log files in {log_dir}")]

        checks = []
        for log_file in log_files:
            try:
                errors = count_log_errors(log_file)
            except OSError as e:
                checks.append(CheckResult(f"log:{log_file.name}", CheckStatus.WARN, f"unreadable: {e}"))
                continue
            if errors:
                checks.append(CheckResult(f"log:{log_file.name}", CheckStatus.WARN,
                                          f"{errors} recent error line(s)"))
            else:
                checks.append(CheckResult(f"log:{log_file.name}", CheckStatus.OK, "No recent errors"))
        return checks

    def check_disk(self) -> CheckResult:
        usage = SystemUtils.disk_usage(self.backup_root)
        message = (f"{SystemUtils.format_bytes(usage.used)}/{SystemUtils.format_bytes(usage.total)} "
                   f"used ({usage.percent:.0f}%), {SystemUtils.format_bytes(usage.free)} free")
        status = CheckStatus.WARN if usage.percent >= self.disk_warn_percent else CheckStatus.OK
        return CheckResult("disk", status, message)

    def check_docker(self) -> CheckResult:
        if not self.runtime.ping():
            return CheckResult("docker", CheckStatus.FAIL, "Docker daemon not reachable")
        try:
            running = len(self.runtime.running_containers())
            total = self.runtime.count_containers()
        except DockerException as e:
            return CheckResult("docker", CheckStatus.FAIL, f"Docker query failed: {e}")
        return CheckResult("docker", CheckStatus.OK, f"{running} running, {total} total",
                           {"running": str(running), "total": str(total)})

    def check_remote(self) -> CheckResult:
        if self.backend is None:
            return CheckResult("remote", CheckStatus.SKIP, "No remote backend configured")
        try:
            latest = self.backend.latest()
        except DockvaultError as e:
            return CheckResult("remote", CheckStatus.FAIL, f"{self.backend.describe()}: {e}")
        if latest is None:
            return CheckResult("remote", CheckStatus.WARN, f"No latest marker on {self.backend.describe()}")
        return CheckResult("remote", CheckStatus.OK, f"latest remote backup {latest}")


class ConnectivityProber:
    """Reachability of the configured remote store (and the VPN for NAS)."""

    def __init__(self, config: Config, backend):
        self.config = config
        self.backend = backend

    def probe(self) -> List[CheckResult]:
        checks = []
        if self.backend.name == BACKEND_NAS and self.config.getboolean('health', 'vpn_check', True):
            vpn = check_vpn()
            checks.append(vpn)
            if vpn.status == CheckStatus.FAIL:
                logger.warning("VPN down, NAS checks will likely fail")
        checks.extend(self.backend.test_connection())

        for check in checks:
            level = "info" if check.ok else "error"
            getattr(logger, level)(f"{check.name}: {check.message}", extra={"backend": self.backend.name})
        return checks
