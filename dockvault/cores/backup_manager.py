################################################################################
# DOCKVAULT
#
# @file:        backup_manager.py
# @module:      dockvault.cores.backup_manager
# @description: Quiesce containers, archive sources, publish the backup
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Backup management for dockvault.

Order of a backup run:

1. take the process lock
2. snapshot running containers (container_states.txt)
3. stop them, archive every source root + record ownership, start them again
4. archive loose system config files (containers already running again)
5. write metadata, ownership helper and finally repoint ``latest``

A run that fails for any reason is removed again and never becomes
``latest``. Transfer and retention are separate steps so a failed upload can
never invalidate the local backup.
"""

from __future__ import annotations

import os
import shutil
import signal
import socket
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ArchiveCorrupt, InterruptedDuringMutation, SourceMissing, TransferFailure
from ..helpers.config import Config
from ..helpers.constants import (
    BACKUP_ID_FORMAT,
    CONTAINER_STATE_FILE,
    DEFAULT_LOCAL_RETENTION,
    DEFAULT_REMOTE_RETENTION,
    LATEST_LINK_NAME,
    METADATA_FILE,
    OWNERSHIP_FILE,
    OWNERSHIP_SCRIPT,
    SYSTEM_CONFIGS_NAME,
    VERSION,
)
from ..helpers.logging import get_logger
from ..helpers.process_lock import ProcessLock
from ..helpers.system_utils import SystemUtils
from ..types import ArchiveRecord, BackupMetadata, BackupResult, OwnershipEntry, PruneResult, TransferResult
from .archive_builder import (
    ArchiveBuilder,
    collect_ownership,
    write_ownership_metadata,
    write_restore_script,
)
from .container_guard import ContainerLifecycleGuard, DockerRuntime
from .retention import RetentionPruner, list_local_backups
from .safe_exit_manager import CleanupHandler, SafeExitManager

logger = get_logger(__name__)


def new_backup_id(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(BACKUP_ID_FORMAT)


def update_latest_link(backup_root: Path, backup_id: str) -> Path:
    """Atomically repoint ``{backup_root}/latest`` to ``backup_id``."""
    link = Path(backup_root) / LATEST_LINK_NAME
    tmp_link = Path(backup_root) / f".{LATEST_LINK_NAME}.tmp"
    if tmp_link.is_symlink() or tmp_link.exists():
        tmp_link.unlink()
    os.symlink(backup_id, tmp_link)
    os.replace(tmp_link, link)
    return link


def resolve_latest(backup_root: Path) -> Optional[str]:
    """Backup id the local ``latest`` link points to, if it is valid."""
    link = Path(backup_root) / LATEST_LINK_NAME
    if not link.is_symlink():
        return None
    target = Path(os.readlink(link)).name
    return target if (Path(backup_root) / target).is_dir() else None


class BackupManager:
    """
    Creates local backups and hands them to the remote backend.

    Args:
        config: Application configuration
        runtime: Container runtime adapter (defaults to the Docker SDK)
    """

    def __init__(self, config: Config, runtime: Optional[DockerRuntime] = None):
        self.config = config
        self.runtime = runtime or DockerRuntime()
        self.guard = ContainerLifecycleGuard(self.runtime, config.stop_timeout)
        self.builder = ArchiveBuilder()
        self.pruner = RetentionPruner()
        self.backup_root = config.backup_root
        self.lock_path = config.get('backup', 'lock_file', '') or None

    # --------------- Backup ---------------

    def create_backup(self, backup_id: Optional[str] = None) -> BackupResult:
        """
        Run one complete local backup.

        Returns:
            BackupResult (``success`` False if the backup was discarded)

        Raises:
            LockUnavailable: another backup/restore is running
        """
        with ProcessLock(self.lock_path):
            return self._create_backup_locked(backup_id or new_backup_id())

    def _create_backup_locked(self, backup_id: str) -> BackupResult:
        start = time.time()
        self.backup_root.mkdir(parents=True, exist_ok=True)
        backup_dir = self.backup_root / backup_id
        backup_dir.mkdir(parents=False, exist_ok=False)
        result = BackupResult(backup_id=backup_id, backup_dir=backup_dir)
        logger.info(f"Starting backup {backup_id}", extra={"backup_dir": str(backup_dir)})

        # Abbruch mitten im Lauf: unvollstaendiges Verzeichnis wegraeumen
        safe_exit = SafeExitManager.get_instance()
        cleanup = CleanupHandler(name="incomplete_backup")
        cleanup.register_cleanup("backup_dir", lambda: self._discard(backup_dir))
        safe_exit.register_handler(cleanup)

        try:
            running = self.guard.snapshot()
            result.running_containers = running
            (backup_dir / CONTAINER_STATE_FILE).write_text(
                "".join(f"{name}\n" for name in running), encoding="utf-8"
            )
            docker_version = self.runtime.version()
            total_containers = self.runtime.count_containers()

            ownership: Dict[str, List[OwnershipEntry]] = {}
            try:
                with self.guard.quiesced(running) as window:
                    self._archive_sources(backup_id, backup_dir, result, ownership)
            except KeyboardInterrupt as e:
                self._discard(backup_dir)
                raise InterruptedDuringMutation(signal.SIGINT, "archive") from e
            result.resume_failures = window.resume_failures

            if result.success:
                self._archive_system_configs(backup_id, backup_dir, result)
            if result.success and not result.archives:
                result.errors.append("No source could be archived")

            if not result.success:
                logger.error(f"Backup {backup_id} failed, discarding it",
                             extra={"errors": "; ".join(result.errors)})
                self._discard(backup_dir)
                return result

            write_ownership_metadata(backup_dir / OWNERSHIP_FILE, ownership)
            write_restore_script(backup_dir / OWNERSHIP_SCRIPT)
            self._save_metadata(backup_dir, result, docker_version, total_containers)

            update_latest_link(self.backup_root, backup_id)
            logger.info(f"Backup {backup_id} completed", extra={"archives": len(result.archives)})
            return result
        except BaseException:
            # nie ein halbes Backup liegen lassen
            self._discard(backup_dir)
            raise
        finally:
            safe_exit.unregister_handler(cleanup)
            result.duration_seconds = time.time() - start

    def _archive_sources(self, backup_id: str, backup_dir: Path, result: BackupResult,
                         ownership: Dict[str, List[OwnershipEntry]]) -> None:
        for source in self.config.sources:
            try:
                info = self.builder.build(source, backup_dir, backup_id)
            except SourceMissing as e:
                result.skipped_sources.append(str(source))
                logger.warning(f"Skipping: {e}", extra={"source": str(source)})
                continue
            except ArchiveCorrupt as e:
                result.errors.append(str(e))
                logger.error(f"Archive verification failed: {e}", extra={"source": str(source)})
                return
            result.archives.append(info)
            ownership[str(source)] = collect_ownership(source)

    def _archive_system_configs(self, backup_id: str, backup_dir: Path, result: BackupResult) -> None:
        if not self.config.getboolean('backup', 'system_configs', True):
            return
        home = self.config.getpath('backup', 'system_config_home', '/root')
        try:
            info = self.builder.build_file_set(
                home,
                backup_dir,
                backup_id,
                SYSTEM_CONFIGS_NAME,
                patterns=self.config.getlist('backup', 'system_config_patterns'),
                excludes=self.config.getlist('backup', 'system_config_excludes'),
            )
            result.archives.append(info)
        except SourceMissing as e:
            logger.info(f"No system configs archived: {e}")
        except ArchiveCorrupt as e:
            result.errors.append(str(e))
            logger.error(f"System config archive failed: {e}")

    def _save_metadata(self, backup_dir: Path, result: BackupResult,
                       docker_version: str, total_containers: int) -> BackupMetadata:
        metadata = BackupMetadata(
            backup_timestamp=result.backup_id,
            backup_date=datetime.now().astimezone().isoformat(timespec="seconds"),
            hostname=socket.gethostname(),
            docker_version=docker_version,
            containers_backed_up=total_containers,
            running_containers=len(result.running_containers),
            source_directories=[str(a.source_root) for a in result.archives
                                if a.name != SYSTEM_CONFIGS_NAME],
            tool_version=VERSION,
            archives={
                a.name: ArchiveRecord(file=a.archive_path.name, checksum=a.checksum,
                                      source_root=str(a.source_root))
                for a in result.archives
            },
        )
        metadata.backup_size_total = SystemUtils.format_bytes(SystemUtils.directory_size(backup_dir))
        metadata.save(backup_dir / METADATA_FILE)
        return metadata

    @staticmethod
    def _discard(backup_dir: Path) -> None:
        if backup_dir.exists():
            shutil.rmtree(backup_dir, ignore_errors=True)
            logger.warning(f"Removed incomplete backup {backup_dir}")

    # --------------- Listing ---------------

    def list_local(self) -> List[str]:
        return list_local_backups(self.backup_root)

    def latest_local(self) -> Optional[str]:
        return resolve_latest(self.backup_root)

    # --------------- Transfer & retention ---------------

    def transfer(self, backend, backup_id: Optional[str] = None) -> TransferResult:
        """
        Push a local backup (default: latest) to the remote backend.

        Failures are reported in the result, the local backup stays valid.
        """
        backup_id = backup_id or self.latest_local()
        result = TransferResult(backup_id=backup_id or "", backend=backend.name)
        if not backup_id:
            result.error = "No local backup to transfer"
            logger.error(result.error)
            return result

        backup_dir = self.backup_root / backup_id
        if not backup_dir.is_dir():
            result.error = f"Local backup not found: {backup_dir}"
            logger.error(result.error)
            return result

        logger.info(f"Transferring {backup_id} via {backend.describe()}")
        try:
            result.location = backend.push(backup_dir, backup_id)
        except TransferFailure as e:
            result.error = str(e)
            logger.error(f"Transfer of {backup_id} failed: {e}",
                         extra={"backend": backend.name, "failed": ",".join(e.failed_items)})
        return result

    def prune_local(self, keep: Optional[int] = None) -> PruneResult:
        keep = keep if keep is not None else self.config.getint(
            'backup', 'local_retention', DEFAULT_LOCAL_RETENTION)
        with ProcessLock(self.lock_path):
            return self.pruner.prune_local(self.backup_root, keep)

    def prune_remote(self, backend, keep: Optional[int] = None) -> PruneResult:
        keep = keep if keep is not None else self.config.getint(
            'transfer', 'remote_retention', DEFAULT_REMOTE_RETENTION)
        return self.pruner.prune_remote(backend, keep)
