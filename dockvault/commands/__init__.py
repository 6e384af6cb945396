"""CLI command modules for dockvault."""

from . import (
    backup_commands,
    config_commands,
    disaster_recovery_commands,
    health_commands,
    minio_commands,
    restore_commands,
)

__all__ = [
    'backup_commands',
    'config_commands',
    'disaster_recovery_commands',
    'health_commands',
    'minio_commands',
    'restore_commands',
]
