"""
System utilities for dockvault.

Disk usage, directory sizes and human readable formatting.
"""

import os
import shutil
from pathlib import Path
from typing import NamedTuple

import psutil

from .logging import get_logger

logger = get_logger(__name__)


class DiskUsage(NamedTuple):
    total: int
    used: int
    free: int
    percent: float


class SystemUtils:
    """Static helpers around host resources."""

    @staticmethod
    def disk_usage(path: Path) -> DiskUsage:
        """
        Disk usage of the filesystem holding ``path``.

        Walks up to the nearest existing parent so a not-yet-created backup
        root still reports its filesystem.
        """
        path = Path(path)
        while not path.exists() and path != path.parent:
            path = path.parent
        usage = psutil.disk_usage(str(path))
        return DiskUsage(usage.total, usage.used, usage.free, usage.percent)

    @staticmethod
    def directory_size(path: Path) -> int:
        """
        Total size of regular files below ``path`` in bytes.

        Unreadable entries are skipped.
        """
        path = Path(path)
        if path.is_file():
            return path.stat().st_size

        total = 0
        for dirpath, _dirnames, filenames in os.walk(path):
            for filename in filenames:
                try:
                    total += os.lstat(os.path.join(dirpath, filename)).st_size
                except OSError:
                    continue
        return total

    @staticmethod
    def command_exists(name: str) -> bool:
        return shutil.which(name) is not None

    @staticmethod
    def format_bytes(size_bytes: float) -> str:
        """
        Format bytes into human-readable string.

        Returns:
            Formatted string (e.g., "1.5 GB")
        """
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if size_bytes < 1024.0:
                return f"{size_bytes:.1f} {unit}"
            size_bytes /= 1024.0
        return f"{size_bytes:.1f} PB"

    @staticmethod
    def format_duration(seconds: float) -> str:
        """
        Format duration into human-readable string (e.g., "2h 15m 30s").
        """
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)

        parts = []
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        if secs > 0 or not parts:
            parts.append(f"{secs}s")
        return " ".join(parts)
