"""
Integration tests for transfer and remote retention.

A real local backup is created with tar; the remote side is either an
in-memory write-once store or the S3 backend talking to an unreachable
endpoint.
"""

import shutil
from pathlib import Path
from typing import List, Optional

import httpx
import pytest

from dockvault.backends.base import RemoteBackend
from dockvault.backends.s3_signed import S3SignedBackend
from dockvault.cores.backup_manager import BackupManager, resolve_latest
from dockvault.errors import RetentionDeleteDenied, TransferFailure
from dockvault.types import CheckResult, CheckStatus

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("tar") is None, reason="tar not available"),
]

BACKUP_ID = "20250201_030000"


class WriteOnceStore(RemoteBackend):
    """Remote store whose bucket policy denies every delete."""

    name = "minio"

    def __init__(self, config, ids=None):
        super().__init__(config)
        self.objects = {backup_id: [] for backup_id in ids or []}
        self.marker: Optional[str] = None
        self.delete_attempts: List[str] = []

    def push(self, local_dir: Path, backup_id: str) -> str:
        self.objects[backup_id] = [p.name for p in self.local_files(local_dir)]
        self.marker = backup_id
        return f"memory/{backup_id}/"

    def list_backups(self) -> List[str]:
        return self.filter_ids(self.objects)

    def fetch(self, backup_id: str, dest_dir: Path) -> Path:
        raise TransferFailure("not supported")

    def delete(self, backup_id: str) -> None:
        self.delete_attempts.append(backup_id)
        raise RetentionDeleteDenied(backup_id, "Access Denied.")

    def latest(self) -> Optional[str]:
        return self.marker

    def test_connection(self) -> List[CheckResult]:
        return [CheckResult("memory", CheckStatus.OK)]


def _history(count):
    """``count`` daily ids in January, oldest first."""
    return [f"202501{day:02d}_030000" for day in range(1, count + 1)]


@pytest.fixture
def backup_manager(config, fake_runtime):
    return BackupManager(config, fake_runtime)


class TestWriteOnceRetention:

    def test_denied_deletes_do_not_fail_the_run(self, backup_manager, source_dirs, config):
        store = WriteOnceStore(config, ids=_history(31))
        assert len(store.list_backups()) == 31

        result = backup_manager.create_backup(BACKUP_ID)
        transfer = backup_manager.transfer(store, result.backup_id)
        prune = backup_manager.prune_remote(store)

        assert result.success
        assert transfer.success
        assert store.latest() == BACKUP_ID
        assert len(prune.kept) == 30
        assert prune.kept[0] == BACKUP_ID
        assert prune.deleted == []
        assert prune.denied == ["20250102_030000", "20250101_030000"]
        assert store.delete_attempts == prune.denied
        assert resolve_latest(config.backup_root) == BACKUP_ID

    def test_thirty_five_backups_keep_thirty(self, config):
        ids = [f"2025{month:02d}{day:02d}_030000" for month in (1, 2) for day in range(1, 29)][:35]
        store = WriteOnceStore(config, ids=ids)
        manager = BackupManager(config)

        prune = manager.prune_remote(store, keep=30)

        assert prune.kept == sorted(ids, reverse=True)[:30]
        assert sorted(prune.denied) == sorted(ids)[:5]
        assert len(store.list_backups()) == 35


class TestUnreachableS3:

    @pytest.fixture
    def unreachable(self, config):
        config.set("transfer", "backend", "s3")
        config.set("s3", "endpoint", "https://s3.invalid")
        config.set("s3", "bucket", "backups")
        config.set("s3", "access_key", "AKIA")
        config.set("s3", "secret_key", "secret")

        def _refuse(request):
            raise httpx.ConnectError("Name or service not known", request=request)

        backend = S3SignedBackend(config, transport=httpx.MockTransport(_refuse))
        yield backend
        backend.close()

    def test_local_backup_stays_valid(self, backup_manager, source_dirs, config, unreachable, fake_runtime):
        result = backup_manager.create_backup(BACKUP_ID)
        transfer = backup_manager.transfer(unreachable, BACKUP_ID)

        assert result.success
        assert not transfer.success
        assert "latest marker not updated" in transfer.error
        assert resolve_latest(config.backup_root) == BACKUP_ID
        assert (config.backup_root / BACKUP_ID / f"portainer_{BACKUP_ID}.tar.gz").exists()
        assert fake_runtime.started() == ["cache", "db", "web"]

    def test_remote_prune_skipped(self, backup_manager, unreachable):
        prune = backup_manager.prune_remote(unreachable)
        assert prune.kept == []
        assert prune.deleted == []
