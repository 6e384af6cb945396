"""
SSH/rsync backend (NAS).

Authenticates with a dedicated key only (no password prompts, no agent
fallback). The remote ``latest`` symlink is repointed after rsync succeeded.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import List, Optional

from ..errors import RetentionDeleteDenied, TransferFailure
from ..helpers.constants import DEFAULT_SSH_KEY, LATEST_LINK_NAME, SSH_CONNECT_TIMEOUT
from ..helpers.logging import get_logger
from ..helpers.ui_utils import SubprocessError, run_command
from ..types import CheckResult, CheckStatus
from .base import RemoteBackend

logger = get_logger(__name__)


class SshRsyncBackend(RemoteBackend):
    """Mirror backups to ``user@host:remote_dir/{id}/``."""

    name = "nas"

    def __init__(self, config):
        super().__init__(config)
        settings = config.require("nas", "host", "user", "remote_dir")
        self.host = settings["host"]
        self.user = settings["user"]
        self.remote_dir = settings["remote_dir"].rstrip("/") or "/"
        self.ssh_key = config.get("nas", "ssh_key", DEFAULT_SSH_KEY) or DEFAULT_SSH_KEY
        self.connect_timeout = config.getint("nas", "connect_timeout", SSH_CONNECT_TIMEOUT)

    # --------------- helpers ---------------

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def ssh_options(self) -> List[str]:
        return [
            "-i", self.ssh_key,
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "PasswordAuthentication=no",
            "-o", "PubkeyAuthentication=yes",
            "-o", "PreferredAuthentications=publickey",
            "-o", "IdentitiesOnly=yes",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]

    def _ssh(self, remote_cmd: str, description: str, check: bool = True):
        return run_command(["ssh", *self.ssh_options(), self.target, remote_cmd],
                           description, check=check)

    def _rsync_shell(self) -> str:
        return " ".join(["ssh", *(shlex.quote(o) for o in self.ssh_options())])

    def _remote_path(self, *parts: str) -> str:
        return "/".join([self.remote_dir.rstrip("/"), *parts])

    def describe(self) -> str:
        return f"nas ({self.target}:{self.remote_dir})"

    # --------------- interface ---------------

    def push(self, local_dir: Path, backup_id: str) -> str:
        self.validate_id(backup_id)
        remote = self._remote_path(backup_id)
        try:
            self._ssh(f"mkdir -p {shlex.quote(remote)}", "create remote dir")
            run_command(
                ["rsync", "-avz", "--partial", "-e", self._rsync_shell(),
                 f"{Path(local_dir)}/", f"{self.target}:{remote}/"],
                f"rsync {backup_id}",
            )
        except SubprocessError as e:
            raise TransferFailure(f"rsync to {self.target} failed: {e}") from e

        # Symlink erst nach erfolgreichem Sync umbiegen
        try:
            self._ssh(
                f"cd {shlex.quote(self.remote_dir)} && ln -sfn {backup_id} {LATEST_LINK_NAME}",
                "update remote latest",
            )
        except SubprocessError as e:
            raise TransferFailure(f"Uploaded {backup_id} but could not update remote latest: {e}") from e

        location = f"{self.target}:{remote}"
        logger.info(f"Pushed backup to {location}", extra={"backend": self.name})
        return location

    def list_backups(self) -> List[str]:
        try:
            result = self._ssh(
                f"find {shlex.quote(self.remote_dir)} -mindepth 1 -maxdepth 1 -type d "
                f"-name '[0-9]*_[0-9]*'",
                "list remote backups",
            )
        except SubprocessError as e:
            raise TransferFailure(f"Listing {self.target}:{self.remote_dir} failed: {e}") from e
        return self.filter_ids(line.rstrip("/").rsplit("/", 1)[-1]
                               for line in result.stdout.splitlines() if line.strip())

    def fetch(self, backup_id: str, dest_dir: Path) -> Path:
        self.validate_id(backup_id)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            run_command(
                ["rsync", "-avz", "--partial", "-e", self._rsync_shell(),
                 f"{self.target}:{self._remote_path(backup_id)}/", f"{dest_dir}/"],
                f"rsync fetch {backup_id}",
            )
        except SubprocessError as e:
            raise TransferFailure(f"Download of {backup_id} from {self.target} failed: {e}") from e
        return dest_dir

    def delete(self, backup_id: str) -> None:
        self.validate_id(backup_id)
        try:
            self._ssh(f"rm -rf {shlex.quote(self._remote_path(backup_id))}",
                      f"delete {backup_id}")
        except SubprocessError as e:
            raise RetentionDeleteDenied(backup_id, e.stderr.strip()) from e

    def latest(self) -> Optional[str]:
        result = self._ssh(f"readlink {shlex.quote(self._remote_path(LATEST_LINK_NAME))}",
                           "read remote latest", check=False)
        value = (result.stdout or "").strip().rstrip("/").rsplit("/", 1)[-1]
        return value if result.returncode == 0 and self.filter_ids([value]) else None

    def verify_remote(self, backup_id: str) -> bool:
        """Run ``sha256sum -c`` next to the remote archives."""
        self.validate_id(backup_id)
        result = self._ssh(
            f"cd {shlex.quote(self._remote_path(backup_id))} && sha256sum -c *.sha256",
            f"verify remote {backup_id}", check=False,
        )
        if result.returncode != 0:
            logger.error(f"Remote checksum verification failed for {backup_id}",
                         extra={"output": (result.stdout or result.stderr).strip()})
            return False
        return True

    def test_connection(self) -> List[CheckResult]:
        checks = []
        ping = run_command(["ping", "-c", "3", "-W", "5", self.host], "ping NAS", check=False)
        checks.append(CheckResult(
            "ping", CheckStatus.OK if ping.returncode == 0 else CheckStatus.WARN,
            f"{self.host} {'reachable' if ping.returncode == 0 else 'not answering ICMP'}",
        ))

        ssh = self._ssh("echo ok", "ssh login", check=False)
        ok = ssh.returncode == 0 and "ok" in (ssh.stdout or "")
        checks.append(CheckResult(
            "ssh", CheckStatus.OK if ok else CheckStatus.FAIL,
            f"key login as {self.target}" + ("" if ok else f" failed: {(ssh.stderr or '').strip()}"),
        ))

        if ok:
            probe = self._ssh(f"test -d {shlex.quote(self.remote_dir)} && test -w "
                              f"{shlex.quote(self.remote_dir)}", "check remote dir", check=False)
            checks.append(CheckResult(
                "remote_dir", CheckStatus.OK if probe.returncode == 0 else CheckStatus.FAIL,
                f"{self.remote_dir} {'writable' if probe.returncode == 0 else 'missing or read-only'}",
            ))
        return checks
