################################################################################
# DOCKVAULT
#
# @file:        archive_builder.py
# @module:      dockvault.cores.archive_builder
# @description: tar.gz archives with checksums and ownership metadata
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Archive Builder.

Archives are created with GNU tar (numeric owners, permissions, xattrs, ACLs),
listed right after creation to prove they are readable and only then get their
``.sha256`` sidecar. Ownership is additionally recorded in a plain text file
because archive-level preservation can be lossy across filesystems.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
import stat
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import ArchiveCorrupt, SourceMissing
from ..helpers.constants import (
    ARCHIVE_SUFFIX,
    CHECKSUM_SUFFIX,
    DEFAULT_SYSTEM_CONFIG_EXCLUDES,
    DEFAULT_SYSTEM_CONFIG_PATTERNS,
    SYSTEM_CONFIG_MAX_DEPTH,
    TAR_CREATE_FLAGS,
    TAR_EXTRACT_FLAGS,
)
from ..helpers.logging import get_logger
from ..helpers.ui_utils import SubprocessError, run_command
from ..types import ArchiveInfo, OwnershipEntry

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024

RESTORE_OWNERSHIP_SCRIPT = """#!/bin/bash
# Auto-generated ownership restoration
METADATA_FILE="$(dirname "${BASH_SOURCE[0]}")/ownership_metadata.txt"
[ ! -f "$METADATA_FILE" ] && exit 1

echo "Restoring ownership from backup metadata..."
while IFS= read -r line; do
    [[ "$line" =~ ^#.*$ ]] && continue
    [ -z "$line" ] && continue
    perms="${line##*:}"; line="${line%:*}"
    gid="${line##*:}"; line="${line%:*}"
    uid="${line##*:}"; path="${line%:*}"
    [ -e "$path" ] || [ -L "$path" ] || continue

    chown -h "$uid:$gid" "$path" 2>/dev/null
    [ -L "$path" ] || chmod "$perms" "$path" 2>/dev/null
done < "$METADATA_FILE"
echo "Ownership restoration completed"
"""


def archive_name(name: str, backup_id: str) -> str:
    return f"{name}_{backup_id}{ARCHIVE_SUFFIX}"


def compute_checksum(path: Path) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive: Path) -> Path:
    return archive.with_name(archive.name + CHECKSUM_SUFFIX)


def write_checksum_file(archive: Path, checksum: str) -> Path:
    """Write ``<hex>  <filename>`` (sha256sum -c compatible)."""
    target = checksum_path_for(archive)
    target.write_text(f"{checksum}  {archive.name}\n", encoding="utf-8")
    return target


def read_checksum_file(path: Path) -> str:
    content = Path(path).read_text(encoding="utf-8").strip()
    if not content:
        raise ArchiveCorrupt(str(path), "empty checksum file")
    return content.split()[0].lower()


def verify_checksum(archive: Path) -> bool:
    """
    Recompute and compare the archive checksum.

    Returns:
        True if it matches, False on mismatch or missing sidecar
    """
    sidecar = checksum_path_for(archive)
    if not sidecar.exists() or not archive.exists():
        return False
    return compute_checksum(archive) == read_checksum_file(sidecar)


# --------------- Ownership metadata ---------------


def collect_ownership(root: Path) -> List[OwnershipEntry]:
    """
    Record (path, uid, gid, mode) for ``root`` and everything below it.

    Symlinks are recorded themselves, never followed.
    """
    entries = []
    root = Path(root)

    def _record(path: str) -> None:
        try:
            st = os.lstat(path)
        except OSError as e:
            logger.debug(f"Skipping {path}: {e}")
            return
        entries.append(OwnershipEntry(path, st.st_uid, st.st_gid, stat.S_IMODE(st.st_mode)))

    _record(str(root))
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(dirnames) + sorted(filenames):
            _record(os.path.join(dirpath, name))
    return entries


def write_ownership_metadata(path: Path, entries_by_source: Dict[str, List[OwnershipEntry]]) -> None:
    lines = [
        f"# Ownership Metadata - {datetime.now().astimezone().isoformat(timespec='seconds')}",
        "# Format: PATH:UID:GID:PERMISSIONS",
    ]
    for source, entries in entries_by_source.items():
        lines.append(f"# Source: {source}")
        lines.extend(entry.to_line() for entry in entries)
    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


def read_ownership_metadata(path: Path) -> List[OwnershipEntry]:
    entries = []
    for lineno, line in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip() or line.startswith("#"):
            continue
        try:
            entries.append(OwnershipEntry.from_line(line))
        except ValueError:
            logger.warning(f"Ignoring malformed ownership line {lineno}: {line!r}")
    return entries


def apply_ownership(entries: Iterable[OwnershipEntry]) -> int:
    """
    Reassert uid/gid/mode for every existing path.

    Returns:
        Number of entries applied
    """
    applied = 0
    for entry in entries:
        if not os.path.lexists(entry.path):
            continue
        is_link = os.path.islink(entry.path)
        try:
            os.chown(entry.path, entry.uid, entry.gid, follow_symlinks=False)
            if not is_link:
                os.chmod(entry.path, entry.mode)
            applied += 1
        except OSError as e:
            logger.warning(f"Could not restore ownership of {entry.path}: {e}")
    return applied


def write_restore_script(path: Path) -> Path:
    Path(path).write_text(RESTORE_OWNERSHIP_SCRIPT, encoding="utf-8")
    os.chmod(path, 0o755)
    return Path(path)


# --------------- Archive Builder ---------------


class ArchiveBuilder:
    """Creates and unpacks verified tar.gz archives."""

    def build(
        self,
        source_root: Path,
        dest_dir: Path,
        backup_id: str,
        name: Optional[str] = None,
    ) -> ArchiveInfo:
        """
        Archive one directory root.

        Raises:
            SourceMissing: root does not exist (caller skips it)
            ArchiveCorrupt: tar failed or the result cannot be listed
        """
        source_root = Path(source_root)
        if not source_root.is_dir():
            raise SourceMissing(str(source_root))

        name = name or source_root.name
        archive = Path(dest_dir) / archive_name(name, backup_id)
        logger.info(f"Creating archive {archive.name}", extra={"source": str(source_root)})

        cmd = ["tar", "-czf", str(archive), *TAR_CREATE_FLAGS,
               "-C", str(source_root.parent), source_root.name]
        return self._create(cmd, archive, name, source_root)

    def build_file_set(
        self,
        home: Path,
        dest_dir: Path,
        backup_id: str,
        name: str,
        patterns: Optional[List[str]] = None,
        excludes: Optional[List[str]] = None,
    ) -> ArchiveInfo:
        """
        Archive loose config files below ``home`` (depth <= 2).

        Raises:
            SourceMissing: nothing matched
            ArchiveCorrupt: tar failed or the result cannot be listed
        """
        home = Path(home)
        files = self.find_files(home, patterns or DEFAULT_SYSTEM_CONFIG_PATTERNS,
                                excludes if excludes is not None else DEFAULT_SYSTEM_CONFIG_EXCLUDES)
        if not files:
            raise SourceMissing(f"{home} ({name}: no matching files)")

        archive = Path(dest_dir) / archive_name(name, backup_id)
        logger.info(f"Creating archive {archive.name} with {len(files)} file(s)",
                    extra={"source": str(home)})
        cmd = ["tar", "-czf", str(archive), *TAR_CREATE_FLAGS, "-C", str(home), "--", *files]
        return self._create(cmd, archive, name, home)

    @staticmethod
    def find_files(home: Path, patterns: List[str], excludes: List[str]) -> List[str]:
        """Relative paths of matching regular files at depth <= 2."""
        matches = []
        if not home.is_dir():
            return matches
        for dirpath, dirnames, filenames in os.walk(home):
            rel_dir = os.path.relpath(dirpath, home)
            depth = 0 if rel_dir == "." else rel_dir.count(os.sep) + 1
            if depth == 0:
                dirnames[:] = [d for d in dirnames if d not in excludes]
            if depth + 1 >= SYSTEM_CONFIG_MAX_DEPTH:
                dirnames[:] = []
            for filename in filenames:
                full = os.path.join(dirpath, filename)
                if not os.path.isfile(full) or os.path.islink(full):
                    continue
                if any(fnmatch.fnmatch(filename, p) for p in patterns):
                    matches.append(os.path.normpath(os.path.join(rel_dir, filename)))
        return sorted(matches)

    def verify(self, archive: Path) -> None:
        """
        List the archive contents.

        Raises:
            ArchiveCorrupt: archive missing or unreadable
        """
        archive = Path(archive)
        if not archive.exists():
            raise ArchiveCorrupt(str(archive), "archive not found")
        try:
            run_command(["tar", "-tzf", str(archive)], f"verify {archive.name}")
        except SubprocessError as e:
            raise ArchiveCorrupt(str(archive), e.stderr.strip() or "tar listing failed") from e

    def extract(self, archive: Path, target_dir: Path, extra_args: Optional[List[str]] = None) -> None:
        """
        Unpack into ``target_dir`` keeping numeric owners and permissions.

        Raises:
            SubprocessError: tar failed
        """
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        cmd = ["tar", "-xzf", str(archive), "-C", str(target_dir), *TAR_EXTRACT_FLAGS,
               *(extra_args or [])]
        run_command(cmd, f"extract {Path(archive).name}")
        logger.info(f"Extracted {Path(archive).name} into {target_dir}")

    def snapshot_copy(self, source_root: Path, dest: Path) -> Path:
        """Plain archive without checksum (safety copies outside the managed set)."""
        source_root = Path(source_root)
        if not source_root.exists():
            raise SourceMissing(str(source_root))
        dest.parent.mkdir(parents=True, exist_ok=True)
        run_command(
            ["tar", "-czf", str(dest), *TAR_CREATE_FLAGS,
             "-C", str(source_root.parent), source_root.name],
            f"safety copy {source_root.name}",
        )
        return dest

    def _create(self, cmd: List[str], archive: Path, name: str, source_root: Path) -> ArchiveInfo:
        try:
            run_command(cmd, f"archive {name}")
        except SubprocessError as e:
            self._discard(archive)
            raise ArchiveCorrupt(str(archive), e.stderr.strip() or "tar failed") from e

        try:
            self.verify(archive)
        except ArchiveCorrupt:
            self._discard(archive)
            raise

        checksum = compute_checksum(archive)
        write_checksum_file(archive, checksum)
        size = archive.stat().st_size
        logger.info(f"Archive verified: {archive.name}",
                    extra={"sha256": checksum[:12], "bytes": size})
        return ArchiveInfo(name=name, archive_path=archive, checksum=checksum,
                           source_root=source_root, size_bytes=size)

    @staticmethod
    def _discard(archive: Path) -> None:
        for path in (archive, checksum_path_for(archive)):
            if path.exists():
                path.unlink()
