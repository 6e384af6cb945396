################################################################################
# DOCKVAULT
#
# @file:        safe_exit_manager.py
# @module:      dockvault.cores.safe_exit_manager
# @description: Signal-safe cleanup: restart containers, kill children, tidy up
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Two-layer exit safety.

Process layer:
    Every child started through ``run_command`` is tracked. On SIGINT/SIGTERM
    they receive SIGTERM, survivors get SIGKILL after a grace period.

Strategy layer:
    Exit handlers registered by the running operation, executed by priority:

    10  ServiceContinuityHandler  restart containers stopped by the guard
    20  DataSafetyHandler         drop temp downloads, print rollback hints
    50  CleanupHandler            operation-specific callbacks

After the handlers ran the process exits with 128 + signal number.
"""

from __future__ import annotations

import os
import shutil
import signal
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..helpers.logging import get_logger

logger = get_logger(__name__)

TERMINATE_GRACE_SECONDS = 5


@dataclass
class TrackedProcess:
    pid: int
    name: str
    registered_at: float = field(default_factory=time.time)


class ExitHandler:
    """Base class for cleanup strategies."""

    priority: int = 100
    name: str = "exit_handler"

    def cleanup(self) -> None:
        raise NotImplementedError


class ServiceContinuityHandler(ExitHandler):
    """
    Restarts containers that were stopped inside a guarded window.

    Containers are restarted in LIFO order (last stopped, first started).
    Every failure is logged and the remaining containers are still started.
    """

    priority = 10
    name = "service_continuity"

    def __init__(self, start_container: Callable[[str], None]):
        self._start_container = start_container
        self._containers: List[str] = []
        self._lock = threading.Lock()
        self.fired = False
        self.failures: List[str] = []

    def register_container(self, name: str) -> None:
        with self._lock:
            if name not in self._containers:
                self._containers.append(name)

    def unregister_container(self, name: str) -> None:
        with self._lock:
            self._containers = [c for c in self._containers if c != name]

    def cleanup(self) -> None:
        with self._lock:
            containers = list(reversed(self._containers))
            self.fired = True
        if not containers:
            return

        logger.warning(
            f"Interrupted: restarting {len(containers)} container(s)",
            extra={"handler": self.name},
        )
        for name in containers:
            try:
                self._start_container(name)
                logger.info(f"Restarted container: {name}", extra={"container": name})
            except Exception as e:
                self.failures.append(name)
                logger.error(f"Failed to restart {name}: {e}", extra={"container": name})


class DataSafetyHandler(ExitHandler):
    """
    Restore-side cleanup: removes temp downloads and tells the operator where
    the pre-restore copies live.
    """

    priority = 20
    name = "data_safety"

    def __init__(self):
        self._temp_dirs: List[str] = []
        self._safety_backups: List[str] = []
        self._relocated: List[Tuple[str, str]] = []

    def register_temp_dir(self, path: str) -> None:
        self._temp_dirs.append(str(path))

    def register_safety_backup(self, path: str) -> None:
        self._safety_backups.append(str(path))

    def register_relocated(self, original: str, relocated: str) -> None:
        self._relocated.append((str(original), str(relocated)))

    def cleanup(self) -> None:
        for temp_dir in self._temp_dirs:
            try:
                if os.path.exists(temp_dir):
                    shutil.rmtree(temp_dir)
                    logger.info(f"Removed temp dir {temp_dir}")
            except OSError as e:
                logger.error(f"Could not remove temp dir {temp_dir}: {e}")

        for original, relocated in self._relocated:
            logger.warning(
                f"Restore interrupted: previous data kept at {relocated}",
                extra={"rollback": f"mv {relocated} {original}"},
            )
        for path in self._safety_backups:
            logger.warning(f"Pre-restore safety backup: {path}")


class CleanupHandler(ExitHandler):
    """Generic named callbacks, executed in registration order."""

    priority = 50

    def __init__(self, name: str = "cleanup", callback: Optional[Callable[[], None]] = None):
        self.name = name
        self._callback = callback
        self._cleanup_items: List[Tuple[str, Callable[[], None]]] = []

    def register_cleanup(self, name: str, callback: Callable[[], None]) -> None:
        self._cleanup_items.append((name, callback))

    def cleanup(self) -> None:
        if self._callback is not None:
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Cleanup callback of {self.name} failed: {e}")

        for item_name, callback in self._cleanup_items:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cleanup '{item_name}' failed: {e}")


class SafeExitManager:
    """
    Process-wide singleton coordinating signal-time cleanup.

    Use ``SafeExitManager.get_instance()``; tests call ``reset_instance()``.
    """

    _instance: Optional["SafeExitManager"] = None
    _instance_lock = threading.Lock()
    _creating = False

    def __init__(self):
        if not SafeExitManager._creating:
            raise RuntimeError("Use SafeExitManager.get_instance() instead of direct construction")

        self._lock = threading.RLock()
        self._processes: Dict[str, TrackedProcess] = {}
        self._handlers: List[Tuple[ExitHandler, int]] = []
        self._cleanup_in_progress = False
        self._original_sigint = None
        self._original_sigterm = None

    @classmethod
    def get_instance(cls) -> "SafeExitManager":
        with cls._instance_lock:
            if cls._instance is None:
                cls._creating = True
                try:
                    cls._instance = cls()
                finally:
                    cls._creating = False
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._instance_lock:
            instance = cls._instance
            cls._instance = None
        if instance is not None:
            instance.restore_handlers()

    # --------------- Signals ---------------

    def install_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers (main thread only)."""
        self._original_sigint = signal.signal(signal.SIGINT, self._signal_handler)
        self._original_sigterm = signal.signal(signal.SIGTERM, self._signal_handler)
        logger.debug("Signal handlers installed")

    def restore_handlers(self) -> None:
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
            self._original_sigterm = None

    def _signal_handler(self, signum, frame) -> None:
        exit_code = 128 + int(signum)
        with self._lock:
            if self._cleanup_in_progress:
                # Zweites Signal waehrend Cleanup: sofort raus
                logger.error("Second signal during cleanup, forcing exit")
                sys.exit(exit_code)
                return
            self._cleanup_in_progress = True

        logger.warning(f"Received signal {signum}, running safe exit cleanup")
        self._terminate_all_processes()
        self._run_all_handlers()
        sys.exit(exit_code)

    # --------------- Process layer ---------------

    def register_process(self, pid: int, name: str) -> str:
        cleanup_id = uuid.uuid4().hex
        with self._lock:
            self._processes[cleanup_id] = TrackedProcess(pid=pid, name=name)
        return cleanup_id

    def unregister_process(self, cleanup_id: str) -> None:
        with self._lock:
            self._processes.pop(cleanup_id, None)

    def _terminate_all_processes(self) -> None:
        with self._lock:
            processes = list(self._processes.values())
            self._processes.clear()
        if not processes:
            return

        alive = []
        for proc in processes:
            try:
                os.kill(proc.pid, signal.SIGTERM)
                alive.append(proc)
                logger.debug(f"SIGTERM -> {proc.name} ({proc.pid})")
            except ProcessLookupError:
                continue
        if not alive:
            return

        time.sleep(TERMINATE_GRACE_SECONDS)
        for proc in alive:
            try:
                os.kill(proc.pid, 0)
            except ProcessLookupError:
                continue
            try:
                os.kill(proc.pid, signal.SIGKILL)
                logger.warning(f"SIGKILL -> {proc.name} ({proc.pid})")
            except ProcessLookupError:
                continue

    # --------------- Strategy layer ---------------

    def register_handler(self, handler: ExitHandler) -> None:
        with self._lock:
            self._handlers.append((handler, handler.priority))
            self._handlers.sort(key=lambda item: item[1])

    def unregister_handler(self, handler: ExitHandler) -> None:
        with self._lock:
            self._handlers = [(h, p) for h, p in self._handlers if h is not handler]

    def _run_all_handlers(self) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler, _priority in handlers:
            try:
                logger.debug(f"Running exit handler {handler.name}")
                handler.cleanup()
            except Exception as e:
                logger.error(f"Exit handler {handler.name} failed: {e}")
