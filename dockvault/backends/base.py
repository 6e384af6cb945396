################################################################################
# DOCKVAULT
#
# @file:        base.py
# @module:      dockvault.backends.base
# @description: Capability interface shared by all remote stores
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Remote transfer backend interface.

Every backend mirrors the local layout ``{id}/...`` below a host-scoped
location and moves the "latest" pointer only after all content arrived.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

from ..helpers.config import Config
from ..helpers.constants import BACKUP_ID_PATTERN
from ..helpers.logging import get_logger
from ..types import CheckResult

logger = get_logger(__name__)


class RemoteBackend(ABC):
    """
    Push/list/fetch/delete of complete backup directories.

    Args:
        config: Application configuration
    """

    name: str = "remote"

    def __init__(self, config: Config):
        self.config = config
        self.hostname = config.hostname

    @abstractmethod
    def push(self, local_dir: Path, backup_id: str) -> str:
        """
        Upload a backup directory, then move the latest marker.

        Returns:
            Human readable remote location

        Raises:
            TransferFailure: any file failed; the marker is left untouched
        """

    @abstractmethod
    def list_backups(self) -> List[str]:
        """Remote backup ids, newest first. Raises TransferFailure."""

    @abstractmethod
    def fetch(self, backup_id: str, dest_dir: Path) -> Path:
        """Download one backup into ``dest_dir``. Raises TransferFailure."""

    @abstractmethod
    def delete(self, backup_id: str) -> None:
        """Remove one backup. Raises RetentionDeleteDenied if the store refuses."""

    @abstractmethod
    def latest(self) -> Optional[str]:
        """Id referenced by the remote latest marker, None if absent."""

    @abstractmethod
    def test_connection(self) -> List[CheckResult]:
        """Reachability probes, one CheckResult per step."""

    def describe(self) -> str:
        return self.name

    @staticmethod
    def filter_ids(names: Iterable[str]) -> List[str]:
        """Keep names that look like backup ids, newest first."""
        return sorted({n for n in names if BACKUP_ID_PATTERN.match(n)}, reverse=True)

    @staticmethod
    def validate_id(backup_id: str) -> str:
        if not BACKUP_ID_PATTERN.match(backup_id or ""):
            raise ValueError(f"Invalid backup id: {backup_id!r}")
        return backup_id

    @staticmethod
    def local_files(local_dir: Path) -> List[Path]:
        """Regular files of a backup directory (flat layout)."""
        return sorted(p for p in Path(local_dir).iterdir() if p.is_file())
