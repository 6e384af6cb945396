################################################################################
# DOCKVAULT
#
# @file:        process_lock.py
# @module:      dockvault.helpers.process_lock
# @description: Advisory flock guarding the stop-containers critical section
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Process-level lock for backup and restore runs.

Two overlapping "stop all containers" sequences would race each other, so the
container guard + archive section runs under an exclusive, non-blocking
``fcntl.flock``. The kernel drops the lock when the process dies, stale lock
files are harmless.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Optional

from ..errors import LockUnavailable
from .constants import LOCK_FILE_NAME
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOCK_PATH = f"/run/{LOCK_FILE_NAME}"
FALLBACK_LOCK_PATH = f"/tmp/{LOCK_FILE_NAME}"


class ProcessLock:
    """
    Exclusive advisory lock backed by a PID file.

    Usage:
        with ProcessLock():
            ...  # raises LockUnavailable if another run holds it
    """

    def __init__(self, lock_path: Optional[str] = None):
        if lock_path:
            self.lock_path = Path(lock_path)
        elif os.access("/run", os.W_OK):
            self.lock_path = Path(DEFAULT_LOCK_PATH)
        else:
            self.lock_path = Path(FALLBACK_LOCK_PATH)
        self._fd: Optional[int] = None

    def acquire(self) -> bool:
        """
        Try to take the lock without blocking.

        Returns:
            True if acquired, False if another process holds it
        """
        if self._fd is not None:
            return True

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            os.close(fd)
            logger.debug(f"Lock busy: {self.lock_path}", extra={"holder": self.get_holder_pid()})
            return False

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        os.fsync(fd)
        self._fd = fd
        logger.debug(f"Lock acquired: {self.lock_path}")
        return True

    def release(self) -> None:
        """Release the lock (no-op if not held)."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Lock released: {self.lock_path}")

    def is_locked(self) -> bool:
        """True while this instance holds the lock."""
        return self._fd is not None

    def get_holder_pid(self) -> Optional[int]:
        """PID written by the current (or last) holder, if readable."""
        try:
            return int(self.lock_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "ProcessLock":
        if not self.acquire():
            holder = self.get_holder_pid()
            raise LockUnavailable(
                f"Lock held by another process (pid {holder}): {self.lock_path}"
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __del__(self):
        try:
            self.release()
        except Exception:
            pass
