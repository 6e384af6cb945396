################################################################################
# DOCKVAULT
#
# @file:        disaster_recovery_manager.py
# @module:      dockvault.cores.disaster_recovery_manager
# @description: Bare-metal recovery sequence (data, network, Portainer, checklist)
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Disaster Recovery Sequencer.

Brings an empty Docker host back to the point where the operator can redeploy
stacks through Portainer:

1. restore data (relocation is a no-op on a fresh host)
2. ensure the production network exists
3. prune stopped containers
4. start Portainer in bootstrap mode
5. check for reverse-proxy data and write the recovery checklist

Application stacks are never started automatically.
"""

from __future__ import annotations

import socket
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from docker.errors import DockerException

from ..helpers.config import Config
from ..helpers.constants import (
    DEFAULT_CHECKLIST_PATH,
    DEFAULT_DR_NETWORK,
    DEFAULT_MANAGED_BY_LABEL,
    DEFAULT_NPM_DIR,
    DEFAULT_PORTAINER_IMAGE,
    DEFAULT_PORTAINER_NAME,
    DEFAULT_PORTAINER_PORT,
)
from ..helpers.logging import get_logger
from ..types import RecoveryReport
from .container_guard import DockerRuntime
from .restore_manager import SOURCE_LOCAL, SOURCE_REMOTE, RestoreManager

logger = get_logger(__name__)


class DisasterRecoveryManager:
    """
    Runs the fixed recovery sequence and stops at the first failed step.

    Args:
        config: Application configuration
        runtime: Container runtime adapter
        backend: Remote backend used as restore source when configured
    """

    def __init__(self, config: Config, runtime: Optional[DockerRuntime] = None, backend=None,
                 restore_manager: Optional[RestoreManager] = None):
        self.config = config
        self.runtime = runtime or DockerRuntime()
        self.backend = backend
        self.restore_manager = restore_manager or RestoreManager(config, self.runtime, backend)

        section = 'disaster_recovery'
        self.network = config.get(section, 'network', DEFAULT_DR_NETWORK)
        self.portainer_name = config.get(section, 'portainer_name', DEFAULT_PORTAINER_NAME)
        self.portainer_image = config.get(section, 'portainer_image', DEFAULT_PORTAINER_IMAGE)
        self.portainer_data = config.getpath(section, 'portainer_data', '/root/portainer')
        self.portainer_port = config.getint(section, 'portainer_port', DEFAULT_PORTAINER_PORT)
        self.managed_by = config.get(section, 'managed_by_label', DEFAULT_MANAGED_BY_LABEL)
        self.checklist_path = config.getpath(section, 'checklist_path', DEFAULT_CHECKLIST_PATH)
        self.npm_dir = config.getpath(section, 'npm_dir', DEFAULT_NPM_DIR)

    def default_source(self) -> str:
        return SOURCE_REMOTE if self.backend is not None else SOURCE_LOCAL

    def run(self, backup_id: Optional[str] = None, source: Optional[str] = None,
            include_system_configs: bool = True) -> RecoveryReport:
        """
        Execute the recovery sequence. Confirmation happens before calling this.

        Returns:
            RecoveryReport (``success`` False if a step failed)
        """
        report = RecoveryReport()
        logger.info("=== Starting disaster recovery ===")

        if not self.runtime.ping():
            report.errors.append("Docker daemon is not reachable, start Docker first")
            logger.error(report.errors[-1])
            return report

        # 1. Data
        report.restore = self.restore_manager.restore(
            backup_id=backup_id,
            source=source or self.default_source(),
            include_system_configs=include_system_configs,
            restart_recorded=False,
        )
        if not report.restore.success:
            report.errors.append("Data restoration failed: " + "; ".join(report.restore.errors))
            logger.error(report.errors[-1])
            return report

        try:
            # 2. Network
            report.network_created = self.ensure_network()
            # 3. Orphans
            report.containers_pruned = self.runtime.prune_containers()
            logger.info(f"Pruned {report.containers_pruned} stopped container(s)")
            # 4. Management UI
            report.portainer_id = self.deploy_portainer()
        except DockerException as e:
            report.errors.append(f"Docker infrastructure step failed: {e}")
            logger.error(report.errors[-1])
            return report

        # 5. Guidance
        report.proxy_data_found = self.npm_dir.is_dir()
        if report.proxy_data_found:
            logger.info(f"Reverse proxy data found at {self.npm_dir}")
        else:
            logger.warning(f"No reverse proxy data at {self.npm_dir}, fresh setup required")
        report.checklist_path = self.write_checklist(report)

        logger.info("=== Disaster recovery phase 1 completed ===")
        return report

    def ensure_network(self) -> bool:
        """Create the production network if missing. Returns True if created."""
        if self.runtime.network_exists(self.network):
            logger.info(f"Network {self.network} already exists")
            return False
        self.runtime.create_network(self.network)
        logger.info(f"Created network {self.network}")
        return True

    def deploy_portainer(self) -> str:
        """Replace any existing Portainer container with a fresh bootstrap one."""
        if self.runtime.remove(self.portainer_name):
            logger.info(f"Removed existing container {self.portainer_name}")
        try:
            self.runtime.pull_image(self.portainer_image)
        except DockerException as e:
            # Lokales Image reicht zur Not
            logger.warning(f"Could not pull {self.portainer_image}: {e}")

        container_id = self.runtime.run_container(
            self.portainer_image,
            name=self.portainer_name,
            network=self.network,
            volumes={
                '/var/run/docker.sock': {'bind': '/var/run/docker.sock', 'mode': 'rw'},
                str(self.portainer_data): {'bind': '/data', 'mode': 'rw'},
                '/etc/localtime': {'bind': '/etc/localtime', 'mode': 'ro'},
            },
            ports={f'{self.portainer_port}/tcp': self.portainer_port},
            labels={'managed-by': self.managed_by},
            restart_policy='always',
        )
        logger.info(f"Portainer started: {self.portainer_url()}", extra={"container_id": container_id[:12]})
        return container_id

    def portainer_url(self) -> str:
        return f"http://{socket.gethostname()}:{self.portainer_port}"

    def application_dirs(self) -> List[str]:
        apps_root = self.npm_dir.parent
        if not apps_root.is_dir():
            return []
        return sorted(p.name for p in apps_root.iterdir() if p.is_dir())

    def write_checklist(self, report: RecoveryReport) -> Path:
        """Write the manual follow-up checklist (markdown)."""
        now = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        backup_id = report.restore.backup_id if report.restore else "-"
        apps = self.application_dirs()
        apps_root = self.npm_dir.parent

        lines = [
            "# Disaster Recovery Checklist",
            f"Generated: {now}",
            f"Restored backup: {backup_id}",
            "",
            "## Completed automatically",
            "- [x] Data restored from backup",
            f"- [x] Docker network `{self.network}` ready",
            "- [x] Portainer deployed in bootstrap mode",
            "",
            "## Manual steps",
            "",
            "### 1. Access Portainer",
            f"- URL: {self.portainer_url()}",
            "- [ ] Login with restored admin credentials",
            "- [ ] Verify Portainer is working correctly",
            "",
            "### 2. Restore application stacks",
            f"Application data in {apps_root}/:",
        ]
        lines += [f"  - {name}" for name in apps] or ["  (none found)"]
        lines += [
            "",
            "For each application:",
            "- [ ] Recreate stack in Portainer",
            f"- [ ] Verify volume mappings to {apps_root}/[app-name]/",
            "- [ ] Deploy and test functionality",
            "",
            "### 3. SSL/Proxy restoration",
        ]
        if report.proxy_data_found:
            lines += [
                "Nginx Proxy Manager data found:",
                "- [ ] Deploy NPM stack via Portainer",
                "- [ ] Verify SSL certificates restored",
                "- [ ] Verify proxy hosts restored",
            ]
        else:
            lines += [
                "No NPM data found, fresh setup required:",
                "- [ ] Deploy NPM via Portainer",
                "- [ ] Recreate SSL certificates",
                "- [ ] Recreate proxy host configurations",
            ]
        lines += [
            "",
            "### 4. Security lockdown",
            "- [ ] Test all applications work correctly",
            "- [ ] Remove the Portainer port mapping once it is reachable via the proxy",
            "- [ ] Verify all services are only accessible via domain names",
            "",
            "### 5. Backup system verification",
            "- [ ] Run `dockvault backup`",
            "- [ ] Run `dockvault test-connectivity`",
            "- [ ] Run `dockvault health`",
            "",
            "## Important files",
            f"- Recovery log: {self.config.log_file_for('disaster-recovery')}",
            f"- Portainer data: {self.portainer_data}/",
            f"- Application data: {apps_root}/",
        ]
        if report.restore and report.restore.safety_backup_dir:
            lines.append(f"- Pre-restore safety backup: {report.restore.safety_backup_dir}/")
        lines.append("")

        self.checklist_path.parent.mkdir(parents=True, exist_ok=True)
        self.checklist_path.write_text("\n".join(lines), encoding="utf-8")
        logger.info(f"Recovery checklist written: {self.checklist_path}")
        return self.checklist_path
