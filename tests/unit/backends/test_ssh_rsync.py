"""
Unit tests for the SSH/rsync (NAS) backend.

run_command is patched in the backend module; each test inspects the
command lines that would have been executed.
"""

import subprocess
from unittest.mock import patch

import pytest

from dockvault.backends.ssh_rsync import SshRsyncBackend
from dockvault.errors import ConfigError, RetentionDeleteDenied, TransferFailure
from dockvault.helpers.ui_utils import SubprocessError
from dockvault.types import CheckStatus

BACKUP_ID = "20250115_030000"


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


@pytest.fixture
def nas_config(config):
    config.set("transfer", "backend", "nas")
    config.set("nas", "host", "nas.tail")
    config.set("nas", "user", "backup")
    config.set("nas", "remote_dir", "/volume1/backups/")
    config.set("nas", "ssh_key", "/root/.ssh/nas_backup_key")
    return config


@pytest.fixture
def backend(nas_config):
    return SshRsyncBackend(nas_config)


@pytest.fixture
def mock_run():
    with patch("dockvault.backends.ssh_rsync.run_command", return_value=completed()) as mock:
        yield mock


def _commands(mock_run):
    return [c.args[0] for c in mock_run.call_args_list]


@pytest.mark.unit
class TestSshRsyncBackend:

    def test_requires_host(self, config):
        with pytest.raises(ConfigError, match="host"):
            SshRsyncBackend(config)

    def test_key_only_authentication(self, backend):
        options = backend.ssh_options()
        assert options[:2] == ["-i", "/root/.ssh/nas_backup_key"]
        assert "PasswordAuthentication=no" in options
        assert "BatchMode=yes" in options
        assert "IdentitiesOnly=yes" in options

    def test_push_sequence(self, backend, mock_run, tmp_path):
        location = backend.push(tmp_path, BACKUP_ID)

        mkdir, rsync, link = _commands(mock_run)
        assert mkdir[-1] == f"mkdir -p /volume1/backups/{BACKUP_ID}"
        assert rsync[:4] == ["rsync", "-avz", "--partial", "-e"]
        assert rsync[-2:] == [f"{tmp_path}/", f"backup@nas.tail:/volume1/backups/{BACKUP_ID}/"]
        assert link[-1] == f"cd /volume1/backups && ln -sfn {BACKUP_ID} latest"
        assert location == f"backup@nas.tail:/volume1/backups/{BACKUP_ID}"

    def test_rsync_failure_keeps_latest(self, backend, mock_run, tmp_path):
        mock_run.side_effect = [completed(), SubprocessError(["rsync"], 12, "connection unexpectedly closed")]

        with pytest.raises(TransferFailure, match="rsync to backup@nas.tail failed"):
            backend.push(tmp_path, BACKUP_ID)

        assert mock_run.call_count == 2

    def test_list_backups(self, backend, mock_run):
        mock_run.return_value = completed(
            "/volume1/backups/20250113_030000\n/volume1/backups/20250115_030000\n"
            "/volume1/backups/20250114_030000/\n/volume1/backups/lost+found\n"
        )
        assert backend.list_backups() == ["20250115_030000", "20250114_030000", "20250113_030000"]

    def test_list_failure(self, backend, mock_run):
        mock_run.side_effect = SubprocessError(["ssh"], 255, "Connection timed out")
        with pytest.raises(TransferFailure):
            backend.list_backups()

    def test_fetch(self, backend, mock_run, tmp_path):
        dest = backend.fetch(BACKUP_ID, tmp_path / "dl")

        rsync = _commands(mock_run)[0]
        assert rsync[-2:] == [f"backup@nas.tail:/volume1/backups/{BACKUP_ID}/", f"{dest}/"]
        assert dest.is_dir()

    def test_delete_denied(self, backend, mock_run):
        mock_run.side_effect = SubprocessError(["ssh"], 1, "rm: cannot remove: Read-only file system\n")

        with pytest.raises(RetentionDeleteDenied) as exc_info:
            backend.delete(BACKUP_ID)

        assert exc_info.value.reason == "rm: cannot remove: Read-only file system"

    def test_latest(self, backend, mock_run):
        mock_run.return_value = completed(f"{BACKUP_ID}\n")
        assert backend.latest() == BACKUP_ID

    def test_latest_missing_link(self, backend, mock_run):
        mock_run.return_value = completed(returncode=1)
        assert backend.latest() is None

    def test_verify_remote(self, backend, mock_run):
        assert backend.verify_remote(BACKUP_ID)
        mock_run.return_value = completed("portainer.tar.gz: FAILED\n", returncode=1)
        assert not backend.verify_remote(BACKUP_ID)

    def test_connection_checks(self, backend, mock_run):
        mock_run.side_effect = [completed(returncode=1), completed("ok\n"), completed()]

        checks = backend.test_connection()

        assert [(c.name, c.status) for c in checks] == [
            ("ping", CheckStatus.WARN),
            ("ssh", CheckStatus.OK),
            ("remote_dir", CheckStatus.OK),
        ]

    def test_connection_ssh_refused(self, backend, mock_run):
        mock_run.side_effect = [completed(), completed(returncode=255, stderr="Permission denied (publickey).")]

        checks = backend.test_connection()

        assert [c.name for c in checks] == ["ping", "ssh"]
        assert checks[1].status == CheckStatus.FAIL
        assert "Permission denied" in checks[1].message
