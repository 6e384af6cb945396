"""Core business logic modules for dockvault."""

from .archive_builder import ArchiveBuilder
from .container_guard import ContainerLifecycleGuard, DockerRuntime
from .backup_manager import BackupManager
from .retention import RetentionPruner
from .restore_manager import RestoreManager
from .disaster_recovery_manager import DisasterRecoveryManager
from .health_manager import ConnectivityProber, HealthReporter
from .safe_exit_manager import SafeExitManager

__all__ = [
    'ArchiveBuilder',
    'ContainerLifecycleGuard',
    'DockerRuntime',
    'BackupManager',
    'RetentionPruner',
    'RestoreManager',
    'DisasterRecoveryManager',
    'HealthReporter',
    'ConnectivityProber',
    'SafeExitManager',
]
