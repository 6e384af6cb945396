################################################################################
# DOCKVAULT
#
# @file:        errors.py
# @module:      dockvault.errors
# @description: Error taxonomy shared by backup, transfer and restore
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Exception hierarchy for dockvault.

Severity is decided by the caller, not by the exception:
- SourceMissing, ContainerOpFailure, RetentionDeleteDenied are logged and skipped
- ArchiveCorrupt, ChecksumMismatch abort before anything is promoted or mutated
- TransferFailure never invalidates the local backup
"""

from typing import List, Optional


class DockvaultError(Exception):
    """Base class for all dockvault errors."""


class ConfigError(DockvaultError):
    """Configuration missing or invalid."""


class SourceMissing(DockvaultError):
    """An optional source root does not exist on this host."""

    def __init__(self, source: str):
        self.source = source
        super().__init__(f"Source not found: {source}")


class ArchiveCorrupt(DockvaultError):
    """An archive is missing or unreadable."""

    def __init__(self, archive: str, reason: str = "archive is not readable"):
        self.archive = archive
        self.reason = reason
        super().__init__(f"{archive}: {reason}")


class ChecksumMismatch(DockvaultError):
    """A recomputed checksum does not match the stored one."""

    def __init__(self, archive: str, expected: str, actual: str):
        self.archive = archive
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {archive}: expected {expected}, got {actual}")


class TransferFailure(DockvaultError):
    """A remote push/fetch/list failed."""

    def __init__(self, message: str, failed_items: Optional[List[str]] = None):
        self.failed_items = failed_items or []
        super().__init__(message)


class RetentionDeleteDenied(DockvaultError):
    """The remote store refused a delete (write-once policy)."""

    def __init__(self, backup_id: str, reason: str = ""):
        self.backup_id = backup_id
        self.reason = reason
        super().__init__(f"Delete of {backup_id} denied" + (f": {reason}" if reason else ""))


class ContainerOpFailure(DockvaultError):
    """A single container start/stop failed."""

    def __init__(self, container: str, operation: str, reason: str = ""):
        self.container = container
        self.operation = operation
        self.reason = reason
        super().__init__(f"Failed to {operation} container {container}" + (f": {reason}" if reason else ""))


class InterruptedDuringMutation(DockvaultError):
    """A signal arrived while containers were stopped or data was being replaced."""

    def __init__(self, signum: int, phase: str = ""):
        self.signum = signum
        self.phase = phase
        super().__init__(f"Interrupted by signal {signum}" + (f" during {phase}" if phase else ""))


class LockUnavailable(DockvaultError, BlockingIOError):
    """Another dockvault process holds the operation lock."""
