"""
Retention Pruner: keep the newest N backups, locally and remotely.

Local deletion is expected to work, errors propagate. Remote deletion is
best-effort because write-once bucket policies deny deletes on purpose.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from ..errors import RetentionDeleteDenied, TransferFailure
from ..helpers.constants import BACKUP_ID_PATTERN, METADATA_FILE
from ..helpers.logging import get_logger
from ..types import PruneResult

if TYPE_CHECKING:
    from ..backends.base import RemoteBackend

logger = get_logger(__name__)


def select_expired(ids_newest_first: List[str], keep: int) -> List[str]:
    """Ids beyond position ``keep`` of a newest-first list."""
    if keep < 0:
        raise ValueError("keep must be >= 0")
    return list(ids_newest_first[keep:])


def list_local_backups(backup_root: Path) -> List[str]:
    """
    Backup ids below ``backup_root``, newest first.

    Only directories that carry their metadata file count as backups, it is
    written after every archive was verified. Symlinks are ignored.
    """
    backup_root = Path(backup_root)
    if not backup_root.is_dir():
        return []
    ids = [
        entry.name
        for entry in backup_root.iterdir()
        if entry.is_dir() and not entry.is_symlink() and BACKUP_ID_PATTERN.match(entry.name)
        and (entry / METADATA_FILE).is_file()
    ]
    return sorted(ids, reverse=True)


class RetentionPruner:
    """Applies keep-last-N to local directories and remote backends."""

    def prune_local(self, backup_root: Path, keep: int) -> PruneResult:
        """
        Delete local backups beyond ``keep``.

        Raises:
            OSError: a directory could not be removed
        """
        backup_root = Path(backup_root)
        ids = list_local_backups(backup_root)
        expired = select_expired(ids, keep)
        result = PruneResult(kept=ids[:keep])

        for backup_id in expired:
            logger.info(f"Removing old local backup: {backup_id}", extra={"backup_id": backup_id})
            shutil.rmtree(backup_root / backup_id)
            result.deleted.append(backup_id)

        logger.info(
            f"Local retention: kept {len(result.kept)}, deleted {len(result.deleted)}",
            extra={"keep": keep},
        )
        return result

    def prune_remote(self, backend: "RemoteBackend", keep: int,
                     ids: Optional[List[str]] = None) -> PruneResult:
        """
        Best-effort deletion of remote backups beyond ``keep``.

        Never raises for denied deletes. Listing failures are logged and
        result in an empty prune.
        """
        if ids is None:
            try:
                ids = backend.list_backups()
            except TransferFailure as e:
                logger.warning(f"Remote retention skipped, listing failed: {e}")
                return PruneResult()

        expired = select_expired(ids, keep)
        result = PruneResult(kept=ids[:keep])

        for backup_id in expired:
            try:
                backend.delete(backup_id)
                result.deleted.append(backup_id)
                logger.info(f"Removed old remote backup: {backup_id}",
                            extra={"backend": backend.name, "backup_id": backup_id})
            except (RetentionDeleteDenied, TransferFailure) as e:
                # Write-once Policy: erwartet, kein Fehler
                result.denied.append(backup_id)
                logger.warning(f"Remote delete not permitted for {backup_id}: {e}",
                               extra={"backend": backend.name, "backup_id": backup_id})

        if result.denied:
            logger.warning(
                f"{len(result.denied)} remote backup(s) kept by store policy",
                extra={"backend": backend.name},
            )
        return result
