"""Unit tests for the Retention Pruner."""

from unittest.mock import MagicMock

import pytest

from dockvault.cores.retention import RetentionPruner, list_local_backups, select_expired
from dockvault.errors import RetentionDeleteDenied, TransferFailure


def _ids(count, day=1):
    """``count`` backup ids, newest first."""
    return [f"202501{day:02d}_{hour:02d}0000" for hour in reversed(range(count))]


def _backup_dir(root, backup_id):
    path = root / backup_id
    path.mkdir(parents=True)
    (path / "backup_metadata.json").write_text("{}")
    return path


def _remote(ids, denied=()):
    backend = MagicMock()
    backend.name = "s3"
    backend.list_backups.return_value = list(ids)

    def _delete(backup_id):
        if backup_id in denied:
            raise RetentionDeleteDenied(backup_id, "HTTP 403 AccessDenied")

    backend.delete.side_effect = _delete
    return backend


@pytest.mark.unit
class TestSelectExpired:

    def test_keeps_newest(self):
        assert select_expired(["5", "4", "3", "2", "1"], 3) == ["2", "1"]

    def test_fewer_than_keep(self):
        assert select_expired(["2", "1"], 3) == []

    def test_keep_zero_expires_everything(self):
        assert select_expired(["2", "1"], 0) == ["2", "1"]

    def test_negative_keep_rejected(self):
        with pytest.raises(ValueError):
            select_expired(["1"], -1)


@pytest.mark.unit
class TestListLocalBackups:

    def test_only_id_directories_newest_first(self, tmp_path):
        for name in ("20250101_120000", "20250103_120000", "20250102_120000", "not-a-backup"):
            _backup_dir(tmp_path, name)
        (tmp_path / "20250104_120000").write_text("file, not dir")
        (tmp_path / "latest").symlink_to("20250103_120000")

        assert list_local_backups(tmp_path) == [
            "20250103_120000", "20250102_120000", "20250101_120000",
        ]

    def test_missing_root(self, tmp_path):
        assert list_local_backups(tmp_path / "missing") == []

    def test_directory_without_metadata_is_not_a_backup(self, tmp_path):
        _backup_dir(tmp_path, "20250101_120000")
        (tmp_path / "20250102_120000").mkdir()
        (tmp_path / "20250102_120000" / "tools_20250102_120000.tar.gz").write_bytes(b"half")

        assert list_local_backups(tmp_path) == ["20250101_120000"]


@pytest.mark.unit
class TestPruneLocal:

    def test_deletes_oldest(self, tmp_path):
        for backup_id in _ids(5):
            _backup_dir(tmp_path, backup_id)
            (tmp_path / backup_id / "data").write_text("x")

        result = RetentionPruner().prune_local(tmp_path, keep=3)

        assert result.kept == _ids(5)[:3]
        assert result.deleted == _ids(5)[3:]
        assert sorted(p.name for p in tmp_path.iterdir()) == sorted(_ids(5)[:3])

    def test_second_run_is_noop(self, tmp_path):
        for backup_id in _ids(5):
            _backup_dir(tmp_path, backup_id)

        pruner = RetentionPruner()
        pruner.prune_local(tmp_path, keep=3)
        again = pruner.prune_local(tmp_path, keep=3)

        assert again.deleted == []
        assert len(again.kept) == 3

    def test_latest_link_survives(self, tmp_path):
        for backup_id in _ids(4):
            _backup_dir(tmp_path, backup_id)
        (tmp_path / "latest").symlink_to(_ids(4)[0])

        RetentionPruner().prune_local(tmp_path, keep=1)

        assert (tmp_path / "latest").is_symlink()
        assert (tmp_path / "latest").resolve().name == _ids(4)[0]

    def test_incomplete_directory_does_not_displace_backups(self, tmp_path):
        good = _backup_dir(tmp_path, "20250101_000000")
        (tmp_path / "20250102_000000").mkdir()

        result = RetentionPruner().prune_local(tmp_path, keep=1)

        assert result.kept == ["20250101_000000"]
        assert result.deleted == []
        assert good.is_dir()


@pytest.mark.unit
class TestPruneRemote:

    def test_deletes_beyond_keep(self):
        backend = _remote(_ids(5))

        result = RetentionPruner().prune_remote(backend, keep=3)

        assert result.deleted == _ids(5)[3:]
        assert result.denied == []
        assert [c.args[0] for c in backend.delete.call_args_list] == _ids(5)[3:]

    def test_denied_deletes_are_reported_not_raised(self):
        ids = _ids(35)
        backend = _remote(ids, denied=set(ids))

        result = RetentionPruner().prune_remote(backend, keep=30)

        assert result.deleted == []
        assert result.denied == ids[30:]
        assert result.kept == ids[:30]

    def test_transfer_failure_on_delete_counts_as_denied(self):
        backend = _remote(_ids(3))
        backend.delete.side_effect = TransferFailure("timeout")

        result = RetentionPruner().prune_remote(backend, keep=1)

        assert result.denied == _ids(3)[1:]

    def test_listing_failure_gives_empty_result(self):
        backend = _remote([])
        backend.list_backups.side_effect = TransferFailure("unreachable")

        result = RetentionPruner().prune_remote(backend, keep=3)

        assert result.kept == [] and result.deleted == [] and result.denied == []
        backend.delete.assert_not_called()

    def test_explicit_ids_skip_listing(self):
        backend = _remote([])
        RetentionPruner().prune_remote(backend, keep=1, ids=_ids(2))
        backend.list_backups.assert_not_called()
        backend.delete.assert_called_once_with(_ids(2)[1])
