"""
Unit tests for the restore and disaster-recovery commands.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from dockvault.__main__ import app
from dockvault.cores.restore_manager import SOURCE_LOCAL, SOURCE_REMOTE
from dockvault.errors import InterruptedDuringMutation, LockUnavailable
from dockvault.types import RecoveryReport, RestorePhase, RestoreSession

BACKUP_ID = "20250115_030000"


def make_session(phase=RestorePhase.DONE, errors=None):
    session = RestoreSession(backup_id=BACKUP_ID, source=SOURCE_LOCAL)
    session.phase = phase
    session.errors.extend(errors or [])
    session.safety_backup_dir = Path("/tmp/pre_restore_backup_20250115_040000")
    session.relocated = {"/root/portainer": Path("/root/portainer.old")}
    return session


@pytest.fixture
def mock_restore():
    with patch("dockvault.commands.restore_commands.RestoreManager") as cls:
        manager = cls.return_value
        manager.list_sources.return_value = [SOURCE_LOCAL]
        manager.list_backups.return_value = [BACKUP_ID, "20250114_030000"]
        manager.latest.return_value = BACKUP_ID
        manager.restore.return_value = make_session()
        yield manager


def invoke(cli_runner, tmp_config, *args):
    return cli_runner.invoke(app, ["--config", str(tmp_config), *args])


@pytest.mark.unit
class TestRestoreCommand:

    def test_requires_root(self, cli_runner, tmp_config, mock_non_root, mock_restore):
        result = invoke(cli_runner, tmp_config, "restore", "--yes")

        assert result.exit_code == 1
        mock_restore.restore.assert_not_called()

    def test_unattended_latest(self, cli_runner, tmp_config, mock_root, mock_restore):
        result = invoke(cli_runner, tmp_config, "restore", "--yes")

        assert result.exit_code == 0
        mock_restore.restore.assert_called_once_with(
            backup_id=None, source=SOURCE_LOCAL, include_system_configs=False, confirm=None,
        )
        assert f"Restore of {BACKUP_ID} completed" in result.output
        assert "portainer.old" in result.output

    def test_explicit_id_and_system_configs(self, cli_runner, tmp_config, mock_root, mock_restore):
        result = invoke(cli_runner, tmp_config, "restore", BACKUP_ID, "--yes", "--include-system-configs")

        assert result.exit_code == 0
        kwargs = mock_restore.restore.call_args.kwargs
        assert kwargs["backup_id"] == BACKUP_ID
        assert kwargs["include_system_configs"] is True

    def test_interactive_selection(self, cli_runner, tmp_config, mock_root, mock_restore):
        with patch("dockvault.commands.restore_commands.prompt_choice",
                   return_value="20250114_030000") as prompt:
            result = invoke(cli_runner, tmp_config, "restore")

        assert result.exit_code == 0
        prompt.assert_called_once_with("Backup ID", [BACKUP_ID, "20250114_030000"], default=BACKUP_ID)
        kwargs = mock_restore.restore.call_args.kwargs
        assert kwargs["backup_id"] == "20250114_030000"
        assert kwargs["confirm"] is not None

    def test_confirm_callback_uses_typed_yes(self, cli_runner, tmp_config, mock_root, mock_restore):
        invoke(cli_runner, tmp_config, "restore", BACKUP_ID)
        confirm = mock_restore.restore.call_args.kwargs["confirm"]

        with patch("dockvault.commands.restore_commands.confirm_action", return_value=False) as ask:
            assert confirm(make_session()) is False
        ask.assert_called_once()

    def test_unknown_source(self, cli_runner, tmp_config, mock_root, mock_restore):
        result = invoke(cli_runner, tmp_config, "restore", "--yes", "--source", SOURCE_REMOTE)

        assert result.exit_code == 1
        assert "not available" in result.output

    def test_source_prompt_with_backend(self, cli_runner, tmp_config, mock_root, mock_restore):
        mock_restore.list_sources.return_value = [SOURCE_LOCAL, SOURCE_REMOTE]
        with patch("dockvault.commands.restore_commands.prompt_choice",
                   side_effect=[SOURCE_REMOTE, BACKUP_ID]):
            result = invoke(cli_runner, tmp_config, "restore")

        assert result.exit_code == 0
        mock_restore.list_backups.assert_called_once_with(SOURCE_REMOTE)
        assert mock_restore.restore.call_args.kwargs["source"] == SOURCE_REMOTE

    def test_no_backups(self, cli_runner, tmp_config, mock_root, mock_restore):
        mock_restore.list_backups.return_value = []

        result = invoke(cli_runner, tmp_config, "restore")

        assert result.exit_code == 1
        assert "No local backups found" in result.output

    def test_aborted(self, cli_runner, tmp_config, mock_root, mock_restore):
        mock_restore.restore.return_value = make_session(
            RestorePhase.ABORTED, ["Checksum mismatch for portainer.tar.gz"])

        result = invoke(cli_runner, tmp_config, "restore", "--yes")

        assert result.exit_code == 1
        assert "nothing was changed" in result.output

    def test_finished_with_errors(self, cli_runner, tmp_config, mock_root, mock_restore):
        mock_restore.restore.return_value = make_session(errors=["Extraction of tools failed"])

        result = invoke(cli_runner, tmp_config, "restore", "--yes")

        assert result.exit_code == 1
        assert "finished with errors" in result.output

    def test_lock_held(self, cli_runner, tmp_config, mock_root, mock_restore):
        mock_restore.restore.side_effect = LockUnavailable("Another dockvault operation is running")
        assert invoke(cli_runner, tmp_config, "restore", "--yes").exit_code == 1

    def test_interrupted(self, cli_runner, tmp_config, mock_root, mock_restore):
        mock_restore.restore.side_effect = InterruptedDuringMutation(2, "extract")

        result = invoke(cli_runner, tmp_config, "restore", "--yes")

        assert result.exit_code == 130
        assert "*.old" in result.output


@pytest.fixture
def mock_dr():
    with patch("dockvault.commands.disaster_recovery_commands.DisasterRecoveryManager") as cls:
        manager = cls.return_value
        manager.network = "prod-network"
        manager.npm_dir = Path("/root/tools/nginx-proxy-manager")
        manager.portainer_url.return_value = "http://host:9000"
        report = RecoveryReport(restore=make_session(), network_created=True,
                                portainer_id="abc", proxy_data_found=True,
                                checklist_path=Path("/root/disaster-recovery-checklist.md"))
        manager.run.return_value = report
        yield manager


@pytest.mark.unit
class TestDisasterRecoveryCommand:

    def test_cancelled(self, cli_runner, tmp_config, mock_root, mock_dr):
        with patch("dockvault.commands.disaster_recovery_commands.confirm_action", return_value=False):
            result = invoke(cli_runner, tmp_config, "disaster-recovery")

        assert result.exit_code == 0
        assert "cancelled" in result.output
        mock_dr.run.assert_not_called()

    def test_confirmed(self, cli_runner, tmp_config, mock_root, mock_dr):
        with patch("dockvault.commands.disaster_recovery_commands.confirm_action", return_value=True):
            result = invoke(cli_runner, tmp_config, "disaster-recovery", BACKUP_ID)

        assert result.exit_code == 0
        mock_dr.run.assert_called_once_with(backup_id=BACKUP_ID, source=None)
        assert "Network prod-network created" in result.output
        assert "http://host:9000" in result.output

    def test_yes_skips_prompt(self, cli_runner, tmp_config, mock_root, mock_dr):
        with patch("dockvault.commands.disaster_recovery_commands.confirm_action") as ask:
            result = invoke(cli_runner, tmp_config, "disaster-recovery", "--yes", "--source", "local")

        assert result.exit_code == 0
        ask.assert_not_called()
        mock_dr.run.assert_called_once_with(backup_id=None, source="local")

    def test_failure(self, cli_runner, tmp_config, mock_root, mock_dr):
        mock_dr.run.return_value = RecoveryReport(errors=["Docker daemon is not reachable, start Docker first"])

        result = invoke(cli_runner, tmp_config, "disaster-recovery", "--yes")

        assert result.exit_code == 1
        assert "Docker daemon is not reachable" in result.output

    def test_requires_root(self, cli_runner, tmp_config, mock_non_root, mock_dr):
        result = invoke(cli_runner, tmp_config, "disaster-recovery", "--yes")
        assert result.exit_code == 1
        mock_dr.run.assert_not_called()
