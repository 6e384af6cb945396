"""Unit tests for system_utils module."""

from unittest.mock import MagicMock, patch

import pytest

from dockvault.helpers.system_utils import SystemUtils


class TestFormatBytes:

    @pytest.mark.parametrize("size,expected", [
        (0, "0.0 B"),
        (512, "512.0 B"),
        (1536, "1.5 KB"),
        (5 * 1024 ** 3, "5.0 GB"),
    ])
    def test_format(self, size, expected):
        assert SystemUtils.format_bytes(size) == expected


class TestFormatDuration:

    def test_seconds_only(self):
        assert SystemUtils.format_duration(42) == "42s"

    def test_zero(self):
        assert SystemUtils.format_duration(0) == "0s"

    def test_hours_minutes_seconds(self):
        assert SystemUtils.format_duration(2 * 3600 + 15 * 60 + 30) == "2h 15m 30s"

    def test_exact_minutes(self):
        assert SystemUtils.format_duration(120) == "2m"


class TestDirectorySize:

    def test_sums_files_recursively(self, tmp_path):
        (tmp_path / "a").write_bytes(b"x" * 10)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"y" * 5)

        assert SystemUtils.directory_size(tmp_path) == 15

    def test_single_file(self, tmp_path):
        f = tmp_path / "f"
        f.write_bytes(b"abc")
        assert SystemUtils.directory_size(f) == 3

    def test_missing_directory(self, tmp_path):
        assert SystemUtils.directory_size(tmp_path / "missing") == 0


class TestDiskUsage:

    def test_walks_up_to_existing_parent(self, tmp_path):
        usage = MagicMock(total=100, used=40, free=60, percent=40.0)
        with patch("dockvault.helpers.system_utils.psutil.disk_usage", return_value=usage) as mock_du:
            result = SystemUtils.disk_usage(tmp_path / "not" / "yet" / "created")

        mock_du.assert_called_once_with(str(tmp_path))
        assert result.percent == 40.0
        assert result.free == 60

    def test_real_filesystem(self, tmp_path):
        result = SystemUtils.disk_usage(tmp_path)
        assert result.total > 0
        assert 0 <= result.percent <= 100


class TestCommandExists:

    def test_existing(self):
        with patch("shutil.which", return_value="/usr/bin/tar"):
            assert SystemUtils.command_exists("tar") is True

    def test_missing(self):
        with patch("shutil.which", return_value=None):
            assert SystemUtils.command_exists("definitely-not-installed") is False
