"""
Unit tests for backup commands (backup, transfer, prune, list).

The BackupManager is mocked; these tests cover argument handling, output
and exit codes.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from dockvault.__main__ import app
from dockvault.errors import InterruptedDuringMutation, LockUnavailable, TransferFailure
from dockvault.types import ArchiveInfo, BackupResult, PruneResult, TransferResult

BACKUP_ID = "20250115_030000"


def make_result(errors=None, resume_failures=None):
    result = BackupResult(backup_id=BACKUP_ID, backup_dir=Path("/backup") / BACKUP_ID)
    result.archives.append(ArchiveInfo(
        name="portainer",
        archive_path=Path(f"/backup/{BACKUP_ID}/portainer_{BACKUP_ID}.tar.gz"),
        checksum="ab" * 32,
        source_root=Path("/root/portainer"),
        size_bytes=2048,
    ))
    result.errors.extend(errors or [])
    result.resume_failures.extend(resume_failures or [])
    return result


@pytest.fixture
def mock_manager():
    with patch("dockvault.commands.backup_commands.BackupManager") as cls:
        manager = cls.return_value
        manager.create_backup.return_value = make_result()
        manager.prune_local.return_value = PruneResult(kept=[BACKUP_ID], deleted=["20250101_030000"])
        manager.prune_remote.return_value = PruneResult(kept=[BACKUP_ID])
        manager.transfer.return_value = TransferResult(BACKUP_ID, "s3", location="s3://backups/testhost/")
        yield manager


@pytest.fixture
def mock_backend():
    backend = MagicMock()
    backend.describe.return_value = "s3 (https://s3.example.com/backups/testhost/)"
    with patch("dockvault.commands.context.create_backend", return_value=backend):
        yield backend


def invoke(cli_runner, tmp_config, *args):
    return cli_runner.invoke(app, ["--config", str(tmp_config), *args])


@pytest.mark.unit
class TestBackupCommand:

    def test_requires_root(self, cli_runner, tmp_config, mock_non_root, mock_manager):
        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 1
        assert "Root privileges required" in result.output
        mock_manager.create_backup.assert_not_called()

    def test_local_only_without_backend(self, cli_runner, tmp_config, mock_root, mock_manager):
        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 0
        assert f"Backup {BACKUP_ID} completed" in result.output
        assert "kept 1, deleted 1" in result.output
        mock_manager.transfer.assert_not_called()

    def test_transfer_and_remote_prune(self, cli_runner, tmp_config, mock_root, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 0
        mock_manager.transfer.assert_called_once_with(mock_backend, BACKUP_ID)
        mock_manager.prune_remote.assert_called_once_with(mock_backend)
        assert "Transferred to" in result.output

    def test_no_transfer_no_prune(self, cli_runner, tmp_config, mock_root, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "backup", "--no-transfer", "--no-prune")

        assert result.exit_code == 0
        mock_manager.transfer.assert_not_called()
        mock_manager.prune_local.assert_not_called()

    def test_failed_backup_exits_1(self, cli_runner, tmp_config, mock_root, mock_manager):
        mock_manager.create_backup.return_value = make_result(errors=["Checksum mismatch"])

        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 1
        assert "failed and was discarded" in result.output
        mock_manager.prune_local.assert_not_called()

    def test_transfer_failure_keeps_local(self, cli_runner, tmp_config, mock_root, mock_manager, mock_backend):
        mock_manager.transfer.return_value = TransferResult(BACKUP_ID, "s3", error="HTTP 403 AccessDenied")

        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 1
        assert f"Local backup {BACKUP_ID} is valid" in result.output
        assert "HTTP 403 AccessDenied" in result.output
        mock_manager.prune_remote.assert_not_called()

    def test_resume_failures_reported(self, cli_runner, tmp_config, mock_root, mock_manager):
        mock_manager.create_backup.return_value = make_result(resume_failures=["db"])

        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 0
        assert "Containers not restarted: db" in result.output

    def test_lock_held(self, cli_runner, tmp_config, mock_root, mock_manager):
        mock_manager.create_backup.side_effect = LockUnavailable("Another dockvault operation is running")

        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 1
        assert "Another dockvault operation is running" in result.output

    def test_interrupted(self, cli_runner, tmp_config, mock_root, mock_manager):
        mock_manager.create_backup.side_effect = InterruptedDuringMutation(15, "archive")

        result = invoke(cli_runner, tmp_config, "backup")

        assert result.exit_code == 143


@pytest.mark.unit
class TestTransferCommand:

    def test_requires_backend(self, cli_runner, tmp_config, mock_manager):
        result = invoke(cli_runner, tmp_config, "transfer")

        assert result.exit_code == 1
        assert "No remote backend configured" in result.output

    def test_transfer_latest(self, cli_runner, tmp_config, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "transfer")

        assert result.exit_code == 0
        mock_manager.transfer.assert_called_once_with(mock_backend, None)
        mock_manager.prune_remote.assert_not_called()

    def test_transfer_id_with_prune(self, cli_runner, tmp_config, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "transfer", BACKUP_ID, "--prune")

        assert result.exit_code == 0
        mock_manager.transfer.assert_called_once_with(mock_backend, BACKUP_ID)
        mock_manager.prune_remote.assert_called_once()

    def test_transfer_failure(self, cli_runner, tmp_config, mock_manager, mock_backend):
        mock_manager.transfer.return_value = TransferResult(BACKUP_ID, "s3", error="connection refused")

        result = invoke(cli_runner, tmp_config, "transfer")

        assert result.exit_code == 1
        assert "connection refused" in result.output


@pytest.mark.unit
class TestPruneCommand:

    def test_keep_override(self, cli_runner, tmp_config, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "prune", "--keep", "5")

        assert result.exit_code == 0
        mock_manager.prune_local.assert_called_once_with(5)
        mock_manager.prune_remote.assert_called_once_with(mock_backend, 5)

    def test_local_only(self, cli_runner, tmp_config, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "prune", "--local-only")

        assert result.exit_code == 0
        mock_manager.prune_remote.assert_not_called()

    def test_remote_only(self, cli_runner, tmp_config, mock_manager, mock_backend):
        result = invoke(cli_runner, tmp_config, "prune", "--remote-only")

        assert result.exit_code == 0
        mock_manager.prune_local.assert_not_called()
        mock_manager.prune_remote.assert_called_once_with(mock_backend, None)

    def test_denied_deletes_reported(self, cli_runner, tmp_config, mock_manager, mock_backend):
        mock_manager.prune_remote.return_value = PruneResult(
            kept=[BACKUP_ID], denied=["20241201_030000", "20241202_030000"])

        result = invoke(cli_runner, tmp_config, "prune", "--remote-only")

        assert result.exit_code == 0
        assert "2 delete(s) denied" in result.output


@pytest.mark.unit
class TestListCommand:

    def test_no_backups(self, cli_runner, tmp_config, mock_manager):
        mock_manager.list_local.return_value = []

        result = invoke(cli_runner, tmp_config, "list")

        assert result.exit_code == 0
        assert "No backups found" in result.output

    def test_local_list_marks_latest(self, cli_runner, tmp_config, mock_manager):
        mock_manager.list_local.return_value = [BACKUP_ID, "20250114_030000"]
        mock_manager.latest_local.return_value = BACKUP_ID

        result = invoke(cli_runner, tmp_config, "list")

        assert result.exit_code == 0
        assert BACKUP_ID in result.output
        assert "2025-01-15 03:00:00" in result.output
        assert "latest" in result.output
        assert "2 backup(s)" in result.output

    def test_remote_list(self, cli_runner, tmp_config, mock_manager, mock_backend):
        mock_backend.list_backups.return_value = [BACKUP_ID]
        mock_backend.latest.return_value = BACKUP_ID

        result = invoke(cli_runner, tmp_config, "list", "--remote")

        assert result.exit_code == 0
        assert BACKUP_ID in result.output

    def test_remote_list_failure(self, cli_runner, tmp_config, mock_manager, mock_backend):
        mock_backend.list_backups.side_effect = TransferFailure("HTTP 403 AccessDenied")

        result = invoke(cli_runner, tmp_config, "list", "--remote")

        assert result.exit_code == 1
        assert "Cannot list remote backups" in result.output
