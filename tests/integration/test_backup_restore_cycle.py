"""
Integration tests for the backup/restore cycle.

Archives are created, verified and unpacked with the real tar binary;
containers are simulated by the FakeRuntime from conftest.
"""

import os
import shutil
import stat

import pytest

from dockvault.cores.backup_manager import BackupManager, resolve_latest
from dockvault.cores.restore_manager import RestoreManager
from dockvault.helpers.constants import METADATA_FILE, OWNERSHIP_FILE, OWNERSHIP_SCRIPT
from dockvault.types import BackupMetadata, RestorePhase

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("tar") is None, reason="tar not available"),
]

FIRST = "20250114_030000"
SECOND = "20250115_030000"


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


@pytest.fixture
def backup_manager(config, fake_runtime):
    return BackupManager(config, fake_runtime)


@pytest.fixture
def restore_manager(config, fake_runtime):
    return RestoreManager(config, fake_runtime)


class TestBackupCycle:

    def test_backup_layout(self, backup_manager, source_dirs, config, fake_runtime):
        result = backup_manager.create_backup(FIRST)

        assert result.success
        backup_dir = config.backup_root / FIRST
        names = sorted(p.name for p in backup_dir.iterdir())
        assert names == sorted([
            f"portainer_{FIRST}.tar.gz", f"portainer_{FIRST}.tar.gz.sha256",
            f"tools_{FIRST}.tar.gz", f"tools_{FIRST}.tar.gz.sha256",
            "container_states.txt", OWNERSHIP_FILE, OWNERSHIP_SCRIPT, METADATA_FILE,
        ])
        assert (backup_dir / "container_states.txt").read_text() == "cache\ndb\nweb\n"
        metadata = BackupMetadata.load(backup_dir / METADATA_FILE)
        assert set(metadata.archives) == {"portainer", "tools"}
        assert metadata.running_containers == 3
        assert resolve_latest(config.backup_root) == FIRST
        assert fake_runtime.stopped() == ["cache", "db", "web"]
        assert fake_runtime.started() == ["cache", "db", "web"]

    def test_missing_source_skipped(self, backup_manager, source_dirs, config):
        shutil.rmtree(source_dirs[1])

        result = backup_manager.create_backup(FIRST)

        assert result.success
        assert result.skipped_sources == [str(source_dirs[1])]
        assert [a.name for a in result.archives] == ["portainer"]

    def test_latest_moves_only_on_success(self, backup_manager, source_dirs, config):
        backup_manager.create_backup(FIRST)
        backup_manager.create_backup(SECOND)
        assert resolve_latest(config.backup_root) == SECOND

    def test_local_retention(self, backup_manager, source_dirs, config):
        ids = [f"202501{day:02d}_030000" for day in range(10, 15)]
        for backup_id in ids:
            backup_manager.create_backup(backup_id)

        result = backup_manager.prune_local()

        assert result.kept == ids[::-1][:3]
        assert sorted(result.deleted) == ids[:2]
        assert backup_manager.list_local() == ids[::-1][:3]


class TestRestoreCycle:

    def test_round_trip_restores_content_and_modes(self, backup_manager, restore_manager,
                                                   source_dirs, fake_runtime):
        portainer, tools = source_dirs
        secret = tools / "nextcloud" / "config.php"
        os.chmod(secret, 0o640)
        os.chmod(tools / "nextcloud", 0o750)
        backup_manager.create_backup(FIRST)

        (portainer / "portainer.db").write_bytes(b"corrupted")
        os.chmod(secret, 0o666)
        (tools / "nextcloud" / "junk").write_text("x")
        fake_runtime.calls.clear()

        session = restore_manager.restore(FIRST)

        assert session.success, session.errors
        assert session.phase == RestorePhase.DONE
        assert (portainer / "portainer.db").read_bytes() == b"portainer-db"
        assert not (tools / "nextcloud" / "junk").exists()
        assert _mode(secret) == 0o640
        assert _mode(tools / "nextcloud") == 0o750
        assert os.stat(secret).st_uid == os.getuid()
        assert (portainer.with_name("portainer.old") / "portainer.db").read_bytes() == b"corrupted"
        assert sorted(p.name for p in session.safety_backup_dir.iterdir()) == [
            "portainer_current.tar.gz", "tools_current.tar.gz",
        ]

    def test_manually_stopped_container_comes_back(self, backup_manager, restore_manager,
                                                   source_dirs, fake_runtime):
        """web, db and cache run at backup time; db is stopped by hand before the restore."""
        backup_manager.create_backup(FIRST)
        fake_runtime.running = ["cache", "web"]
        fake_runtime.calls.clear()

        session = restore_manager.restore(FIRST)

        assert session.success
        assert fake_runtime.stopped() == ["cache", "web"]
        assert sorted(fake_runtime.started()) == ["cache", "db", "web"]

    def test_tampered_archive_leaves_host_untouched(self, backup_manager, restore_manager,
                                                    source_dirs, config, fake_runtime):
        portainer = source_dirs[0]
        backup_manager.create_backup(FIRST)
        archive = config.backup_root / FIRST / f"portainer_{FIRST}.tar.gz"
        data = bytearray(archive.read_bytes())
        data[len(data) // 2] ^= 0xFF
        archive.write_bytes(bytes(data))
        (portainer / "portainer.db").write_bytes(b"live")
        fake_runtime.calls.clear()

        session = restore_manager.restore(FIRST)

        assert session.phase == RestorePhase.ABORTED
        assert fake_runtime.calls == []
        assert (portainer / "portainer.db").read_bytes() == b"live"
        assert not portainer.with_name("portainer.old").exists()

    def test_restore_older_backup(self, backup_manager, restore_manager, source_dirs):
        portainer = source_dirs[0]
        backup_manager.create_backup(FIRST)
        (portainer / "portainer.db").write_bytes(b"second")
        backup_manager.create_backup(SECOND)

        session = restore_manager.restore(FIRST)

        assert session.success
        assert (portainer / "portainer.db").read_bytes() == b"portainer-db"
