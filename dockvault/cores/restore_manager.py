################################################################################
# DOCKVAULT
#
# @file:        restore_manager.py
# @module:      dockvault.cores.restore_manager
# @description: Restore state machine (select, verify, swap data, resume)
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Phases:
#   SELECT -> VERIFY -> SAFETY_BACKUP -> QUIESCE -> RELOCATE -> EXTRACT
#   -> RESTORE_OWNERSHIP -> RESUME -> CLEANUP -> DONE
#   ABORTED only from SELECT/VERIFY/SAFETY_BACKUP (nothing touched yet)
################################################################################

"""
Restore Orchestrator.

Nothing on the host is modified before the backup has been selected and every
archive passed its checksum. Current data is never deleted: each root is
renamed to ``<root>.old`` before the archive is unpacked, and a tar copy of it
is written to the safety-backup directory first.
"""

from __future__ import annotations

import os
import shutil
import signal
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError

from ..errors import (
    ArchiveCorrupt,
    ChecksumMismatch,
    DockvaultError,
    InterruptedDuringMutation,
    SourceMissing,
    TransferFailure,
)
from ..helpers.config import Config
from ..helpers.constants import (
    ARCHIVE_SUFFIX,
    CONTAINER_STATE_FILE,
    METADATA_FILE,
    OWNERSHIP_FILE,
    RELOCATE_SUFFIX,
    RESTORE_TEMP_PREFIX,
    SAFETY_BACKUP_PREFIX,
    STALE_RESTORE_DIR_MINUTES,
    SYSTEM_CONFIGS_NAME,
)
from ..helpers.logging import get_logger
from ..helpers.process_lock import ProcessLock
from ..helpers.ui_utils import SubprocessError
from ..types import BackupMetadata, RestorePhase, RestoreSession
from .archive_builder import (
    ArchiveBuilder,
    apply_ownership,
    archive_name,
    checksum_path_for,
    compute_checksum,
    read_checksum_file,
    read_ownership_metadata,
)
from .backup_manager import resolve_latest
from .container_guard import ContainerLifecycleGuard, DockerRuntime
from .retention import list_local_backups
from .safe_exit_manager import DataSafetyHandler, SafeExitManager

logger = get_logger(__name__)

SOURCE_LOCAL = "local"
SOURCE_REMOTE = "remote"


@dataclass
class RestoreTarget:
    """One verified archive and where it goes back to."""

    name: str
    archive: Path
    root: Path

    @property
    def is_file_set(self) -> bool:
        return self.name == SYSTEM_CONFIGS_NAME


def purge_stale_temp_dirs(temp_root: Path, max_age_minutes: int = STALE_RESTORE_DIR_MINUTES) -> int:
    """Remove leftover ``restore_*`` download dirs older than ``max_age_minutes``."""
    temp_root = Path(temp_root)
    if not temp_root.is_dir():
        return 0
    cutoff = time.time() - max_age_minutes * 60
    removed = 0
    for entry in temp_root.glob(f"{RESTORE_TEMP_PREFIX}*"):
        try:
            if entry.is_dir() and not entry.is_symlink() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry)
                removed += 1
                logger.info(f"Removed stale restore dir {entry}")
        except OSError as e:
            logger.warning(f"Could not remove stale restore dir {entry}: {e}")
    return removed


class RestoreManager:
    """
    Drives one restore through its phases.

    Args:
        config: Application configuration
        runtime: Container runtime adapter
        backend: Remote backend (None = local restores only)
    """

    def __init__(self, config: Config, runtime: Optional[DockerRuntime] = None, backend=None):
        self.config = config
        self.runtime = runtime or DockerRuntime()
        self.backend = backend
        self.guard = ContainerLifecycleGuard(self.runtime, config.stop_timeout)
        self.builder = ArchiveBuilder()
        self.backup_root = config.backup_root
        self.temp_root = config.getpath('restore', 'temp_dir', tempfile.gettempdir())
        self.safety_root = config.getpath('restore', 'safety_backup_dir', tempfile.gettempdir())
        self.stale_minutes = config.getint('restore', 'stale_temp_minutes', STALE_RESTORE_DIR_MINUTES)
        self.lock_path = config.get('backup', 'lock_file', '') or None

    # --------------- Discovery ---------------

    def list_sources(self) -> List[str]:
        sources = [SOURCE_LOCAL]
        if self.backend is not None:
            sources.append(SOURCE_REMOTE)
        return sources

    def list_backups(self, source: str = SOURCE_LOCAL) -> List[str]:
        """Backup ids available from ``source``, newest first."""
        if source == SOURCE_REMOTE:
            if self.backend is None:
                raise DockvaultError("No remote backend configured")
            return self.backend.list_backups()
        return list_local_backups(self.backup_root)

    def latest(self, source: str = SOURCE_LOCAL) -> Optional[str]:
        if source == SOURCE_REMOTE:
            return self.backend.latest() if self.backend is not None else None
        return resolve_latest(self.backup_root)

    # --------------- Run ---------------

    def restore(
        self,
        backup_id: Optional[str] = None,
        source: str = SOURCE_LOCAL,
        include_system_configs: bool = False,
        confirm: Optional[Callable[[RestoreSession], bool]] = None,
        restart_recorded: bool = True,
    ) -> RestoreSession:
        """
        Restore ``backup_id`` (default: latest of ``source``).

        Args:
            confirm: Called after SELECT; returning False aborts the run
            restart_recorded: Also start containers listed in the backup's
                container_states.txt that are not running right now

        Returns:
            The finished RestoreSession

        Raises:
            LockUnavailable: another backup/restore is running
            InterruptedDuringMutation: interrupted while containers were down
        """
        session = RestoreSession(backup_id=backup_id or "", source=source)
        data_safety = DataSafetyHandler()
        safe_exit = SafeExitManager.get_instance()
        safe_exit.register_handler(data_safety)

        try:
            with ProcessLock(self.lock_path):
                self._run(session, data_safety, include_system_configs, confirm, restart_recorded)
        finally:
            safe_exit.unregister_handler(data_safety)
            self._cleanup(session)
        return session

    def _run(self, session: RestoreSession, data_safety: DataSafetyHandler,
             include_system_configs: bool, confirm, restart_recorded: bool = True) -> None:
        # SELECT
        if not self._select(session):
            return
        if confirm is not None and not confirm(session):
            self._abort(session, "Restore cancelled by user")
            return
        if session.source == SOURCE_REMOTE and not self._download(session, data_safety):
            return

        # VERIFY
        session.phase = RestorePhase.VERIFY
        try:
            targets = self.verify_backup(session.backup_dir, session.backup_id)
        except (ArchiveCorrupt, ChecksumMismatch) as e:
            self._abort(session, str(e))
            return
        if not include_system_configs:
            targets = [t for t in targets if not t.is_file_set]

        # SAFETY_BACKUP
        session.phase = RestorePhase.SAFETY_BACKUP
        try:
            self._safety_backup(session, targets, data_safety)
        except (SubprocessError, OSError) as e:
            self._abort(session, f"Safety backup failed: {e}")
            return

        # QUIESCE .. RESUME
        session.phase = RestorePhase.QUIESCE
        session.original_containers = self.guard.snapshot()
        resume = self._resume_set(session) if restart_recorded else session.original_containers
        try:
            with self.guard.quiesced(session.original_containers, resume=resume) as window:
                restorable = self._relocate(session, targets, data_safety)
                self._extract(session, restorable)
                self._restore_ownership(session, restorable)
                session.phase = RestorePhase.RESUME
        except KeyboardInterrupt as e:
            raise InterruptedDuringMutation(signal.SIGINT, session.phase.value) from e
        session.resume_failures = window.resume_failures
        if window.resume_failures:
            logger.warning(f"Containers not restarted: {', '.join(window.resume_failures)}")

        session.phase = RestorePhase.CLEANUP

    # --------------- Phases ---------------

    def _select(self, session: RestoreSession) -> bool:
        session.phase = RestorePhase.SELECT
        try:
            available = self.list_backups(session.source)
        except DockvaultError as e:
            self._abort(session, f"Cannot list {session.source} backups: {e}")
            return False

        if not session.backup_id:
            session.backup_id = self.latest(session.source) or (available[0] if available else "")
        if not session.backup_id or session.backup_id not in available:
            self._abort(session, f"Backup not found ({session.source}): {session.backup_id or '-'}")
            return False

        if session.source == SOURCE_LOCAL:
            session.backup_dir = self.backup_root / session.backup_id
        logger.info(f"Selected backup {session.backup_id} ({session.source})")
        return True

    def _download(self, session: RestoreSession, data_safety: DataSafetyHandler) -> bool:
        self.temp_root.mkdir(parents=True, exist_ok=True)
        session.temp_dir = Path(tempfile.mkdtemp(
            prefix=f"{RESTORE_TEMP_PREFIX}{session.backup_id}_", dir=self.temp_root))
        data_safety.register_temp_dir(str(session.temp_dir))
        try:
            session.backup_dir = self.backend.fetch(session.backup_id, session.temp_dir)
        except TransferFailure as e:
            self._abort(session, f"Download failed: {e}")
            return False
        logger.info(f"Downloaded {session.backup_id} to {session.backup_dir}")
        return True

    def verify_backup(self, backup_dir: Path, backup_id: str) -> List[RestoreTarget]:
        """
        Check every archive of a backup before anything is touched.

        Raises:
            ArchiveCorrupt: archive/checksum missing, unreadable or bad metadata
            ChecksumMismatch: recomputed checksum differs
        """
        backup_dir = Path(backup_dir)
        metadata = None
        metadata_file = backup_dir / METADATA_FILE
        if metadata_file.exists():
            try:
                metadata = BackupMetadata.load(metadata_file)
            except (ValidationError, ValueError) as e:
                raise ArchiveCorrupt(str(metadata_file), f"invalid metadata: {e}") from e

        targets = self._declared_targets(backup_dir, backup_id, metadata)
        if not targets:
            raise ArchiveCorrupt(str(backup_dir), "no archives in backup")

        for target in targets:
            if not target.archive.exists():
                raise ArchiveCorrupt(str(target.archive), "archive missing")
            sidecar = checksum_path_for(target.archive)
            if not sidecar.exists():
                raise ArchiveCorrupt(str(target.archive), "checksum file missing")
            expected = read_checksum_file(sidecar)
            actual = compute_checksum(target.archive)
            if expected != actual:
                raise ChecksumMismatch(target.archive.name, expected, actual)
            self.builder.verify(target.archive)
            logger.info(f"Verified {target.archive.name}", extra={"sha256": actual[:12]})
        return targets

    def _declared_targets(self, backup_dir: Path, backup_id: str,
                          metadata: Optional[BackupMetadata]) -> List[RestoreTarget]:
        if metadata is not None and metadata.archives:
            return [
                self._checked_target(backup_dir, backup_id, name, record.file, record.source_root)
                for name, record in sorted(metadata.archives.items())
            ]

        # Aeltere Backups ohne archives-Map: aus Dateinamen ableiten
        suffix = f"_{backup_id}{ARCHIVE_SUFFIX}"
        roots = {path.name: path for path in self.config.sources}
        targets = []
        for archive in sorted(backup_dir.glob(f"*{suffix}")):
            name = archive.name[:-len(suffix)]
            if name == SYSTEM_CONFIGS_NAME:
                root = self.config.getpath('backup', 'system_config_home', '/root')
            elif name in roots:
                root = roots[name]
            else:
                logger.warning(f"No configured source for archive {archive.name}, skipping")
                continue
            targets.append(RestoreTarget(name, archive, root))
        return targets

    def _allowed_root(self, name: str) -> Optional[Path]:
        if name == SYSTEM_CONFIGS_NAME:
            return self.config.getpath('backup', 'system_config_home', '/root')
        return next((p for p in self.config.sources if p.name == name), None)

    def _checked_target(self, backup_dir: Path, backup_id: str, name: str,
                        file_name: str, source_root: str) -> RestoreTarget:
        """
        Metadata may come from a remote store: archives must sit inside the
        backup directory and map back onto a configured source root.
        """
        expected = archive_name(name, backup_id)
        if file_name != expected or os.sep in name or name in ("", ".", ".."):
            raise ArchiveCorrupt(str(backup_dir / METADATA_FILE),
                                 f"unexpected archive name {file_name!r} for {name!r}")
        allowed = self._allowed_root(name)
        declared = Path(os.path.normpath(source_root))
        if allowed is None or declared != Path(os.path.normpath(str(allowed))):
            raise ArchiveCorrupt(str(backup_dir / METADATA_FILE),
                                 f"source root {source_root!r} is not a configured source")
        return RestoreTarget(name, backup_dir / expected, allowed)

    def _safety_backup(self, session: RestoreSession, targets: List[RestoreTarget],
                       data_safety: DataSafetyHandler) -> None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safety_dir = self.safety_root / f"{SAFETY_BACKUP_PREFIX}{stamp}"
        for target in targets:
            if target.is_file_set or not target.root.exists():
                continue
            if session.safety_backup_dir is None:
                safety_dir.mkdir(parents=True, exist_ok=True)
                session.safety_backup_dir = safety_dir
                data_safety.register_safety_backup(str(safety_dir))
            dest = safety_dir / f"{target.root.name}_current.tar.gz"
            try:
                self.builder.snapshot_copy(target.root, dest)
            except SourceMissing:
                continue
            logger.info(f"Safety copy of {target.root} -> {dest}")

    def _resume_set(self, session: RestoreSession) -> List[str]:
        """Current snapshot plus containers that were running when the backup was taken."""
        resume = list(session.original_containers)
        state_file = Path(session.backup_dir) / CONTAINER_STATE_FILE
        if not state_file.exists():
            return resume
        recorded = [line.strip() for line in state_file.read_text(encoding="utf-8").splitlines()
                    if line.strip()]
        extra = [name for name in recorded if name not in resume]
        if extra:
            logger.info(f"Also starting containers recorded in the backup: {', '.join(extra)}")
        return resume + extra

    def _relocate(self, session: RestoreSession, targets: List[RestoreTarget],
                  data_safety: DataSafetyHandler) -> List[RestoreTarget]:
        session.phase = RestorePhase.RELOCATE
        restorable = []
        for target in targets:
            if target.is_file_set:
                restorable.append(target)
                continue
            root = target.root
            old = root.with_name(root.name + RELOCATE_SUFFIX)
            try:
                if old.is_dir() and not old.is_symlink():
                    shutil.rmtree(old)
                elif old.exists() or old.is_symlink():
                    old.unlink()
                if root.exists() or root.is_symlink():
                    os.rename(root, old)
                    session.relocated[str(root)] = old
                    data_safety.register_relocated(str(root), str(old))
                    logger.info(f"Moved {root} -> {old}")
            except OSError as e:
                self._fail(session, f"Could not relocate {root}: {e}")
                continue
            restorable.append(target)
        return restorable

    def _extract(self, session: RestoreSession, targets: List[RestoreTarget]) -> None:
        session.phase = RestorePhase.EXTRACT
        for target in list(targets):
            dest = target.root if target.is_file_set else target.root.parent
            try:
                self.builder.extract(target.archive, dest)
            except (SubprocessError, OSError) as e:
                self._fail(session, f"Extraction of {target.archive.name} failed: {e}")
                targets.remove(target)

    def _restore_ownership(self, session: RestoreSession, targets: List[RestoreTarget]) -> None:
        session.phase = RestorePhase.RESTORE_OWNERSHIP
        ownership_file = Path(session.backup_dir) / OWNERSHIP_FILE
        if not ownership_file.exists():
            logger.warning("No ownership metadata in backup, keeping ownership from archives")
            return
        roots = [str(t.root) for t in targets if not t.is_file_set]
        try:
            entries = [
                e for e in read_ownership_metadata(ownership_file)
                if any(e.path == r or e.path.startswith(r.rstrip("/") + "/") for r in roots)
            ]
            session.ownership_applied = apply_ownership(entries)
        except OSError as e:
            self._fail(session, f"Ownership restore failed: {e}")
            return
        logger.info(f"Ownership restored for {session.ownership_applied} entries")

    def _cleanup(self, session: RestoreSession) -> None:
        if session.temp_dir is not None and session.temp_dir.exists():
            shutil.rmtree(session.temp_dir, ignore_errors=True)
            logger.info(f"Removed download dir {session.temp_dir}")
        purge_stale_temp_dirs(self.temp_root, self.stale_minutes)
        if session.phase == RestorePhase.CLEANUP:
            session.phase = RestorePhase.DONE
            if session.errors:
                logger.error(f"Restore of {session.backup_id} finished with {len(session.errors)} error(s)")
            else:
                logger.info(f"Restore of {session.backup_id} completed")

    # --------------- Helpers ---------------

    @staticmethod
    def _abort(session: RestoreSession, message: str) -> None:
        session.errors.append(message)
        logger.error(f"Restore aborted in {session.phase.value}: {message}")
        session.phase = RestorePhase.ABORTED

    @staticmethod
    def _fail(session: RestoreSession, message: str) -> None:
        session.errors.append(message)
        logger.error(message, extra={"phase": session.phase.value})
