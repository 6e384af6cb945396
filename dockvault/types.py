################################################################################
# DOCKVAULT
#
# @file:        types.py
# @module:      dockvault.types
# @description: Shared data models for backups, restore sessions and reports.
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - ArchiveInfo/OwnershipEntry describe what the Archive Builder produced
# - BackupMetadata is the on-disk backup_metadata.json (validated on read)
# - RestoreSession lives only as long as one restore run
################################################################################

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .helpers.constants import BACKUP_ID_PATTERN


# ---- Archive Builder ----

@dataclass
class ArchiveInfo:
    name: str               # logical source name, e.g. "portainer"
    archive_path: Path
    checksum: str
    source_root: Path
    size_bytes: int = 0

    @property
    def checksum_path(self) -> Path:
        return self.archive_path.with_name(self.archive_path.name + ".sha256")


@dataclass(frozen=True)
class OwnershipEntry:
    path: str
    uid: int
    gid: int
    mode: int  # permission bits incl. setuid/setgid/sticky

    def to_line(self) -> str:
        return f"{self.path}:{self.uid}:{self.gid}:{self.mode:o}"

    @classmethod
    def from_line(cls, line: str) -> "OwnershipEntry":
        # Pfade duerfen ':' enthalten, daher von rechts splitten
        path, uid, gid, mode = line.rsplit(":", 3)
        return cls(path=path, uid=int(uid), gid=int(gid), mode=int(mode, 8))


# ---- On-disk metadata ----

class ArchiveRecord(BaseModel):
    file: str
    checksum: str
    source_root: str


class BackupMetadata(BaseModel):
    """Contents of backup_metadata.json."""

    backup_timestamp: str
    backup_date: str
    hostname: str
    docker_version: str = "unknown"
    containers_backed_up: int = 0
    running_containers: int = 0
    source_directories: List[str] = Field(default_factory=list)
    backup_size_total: str = ""
    tool_version: Optional[str] = None
    archives: Dict[str, ArchiveRecord] = Field(default_factory=dict)

    @field_validator("backup_timestamp")
    @classmethod
    def validate_timestamp(cls, v: str) -> str:
        if not BACKUP_ID_PATTERN.match(v):
            raise ValueError(f"backup_timestamp must look like YYYYMMDD_HHMMSS: {v}")
        return v

    @classmethod
    def load(cls, path: Path) -> "BackupMetadata":
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))

    def save(self, path: Path) -> None:
        Path(path).write_text(self.model_dump_json(indent=2, exclude_none=True) + "\n",
                              encoding="utf-8")


# ---- Backup / retention results ----

@dataclass
class BackupResult:
    backup_id: str
    backup_dir: Path
    archives: List[ArchiveInfo] = field(default_factory=list)
    skipped_sources: List[str] = field(default_factory=list)
    running_containers: List[str] = field(default_factory=list)
    resume_failures: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class TransferResult:
    backup_id: str
    backend: str
    location: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class PruneResult:
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    denied: List[str] = field(default_factory=list)


# ---- Restore ----

class RestorePhase(str, Enum):
    SELECT = "select"
    VERIFY = "verify"
    SAFETY_BACKUP = "safety_backup"
    QUIESCE = "quiesce"
    RELOCATE = "relocate"
    EXTRACT = "extract"
    RESTORE_OWNERSHIP = "restore_ownership"
    RESUME = "resume"
    CLEANUP = "cleanup"
    DONE = "done"
    ABORTED = "aborted"


DESTRUCTIVE_PHASES = (
    RestorePhase.QUIESCE,
    RestorePhase.RELOCATE,
    RestorePhase.EXTRACT,
    RestorePhase.RESTORE_OWNERSHIP,
)


@dataclass
class RestoreSession:
    """Process-lifetime state of one restore run. Never persisted."""

    backup_id: str
    source: str                                  # "local" | "remote"
    backup_dir: Optional[Path] = None
    temp_dir: Optional[Path] = None              # remote download
    safety_backup_dir: Optional[Path] = None
    original_containers: List[str] = field(default_factory=list)
    relocated: Dict[str, Path] = field(default_factory=dict)
    phase: RestorePhase = RestorePhase.SELECT
    errors: List[str] = field(default_factory=list)
    resume_failures: List[str] = field(default_factory=list)
    ownership_applied: int = 0

    @property
    def success(self) -> bool:
        return self.phase == RestorePhase.DONE and not self.errors


@dataclass
class RecoveryReport:
    """Outcome of a disaster recovery run, step by step."""

    restore: Optional[RestoreSession] = None
    network_created: bool = False
    containers_pruned: int = 0
    portainer_id: Optional[str] = None
    proxy_data_found: bool = False
    checklist_path: Optional[Path] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.restore is not None and self.restore.success and not self.errors


# ---- Health ----

class CheckStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"
    SKIP = "skip"


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    message: str = ""
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status != CheckStatus.FAIL
