################################################################################
# DOCKVAULT
#
# @file:        __init__.py
# @module:      dockvault
# @description: Exposes version, configuration and the core managers.
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
dockvault: consistent backup, restore and disaster recovery for Docker hosts.

Containers are stopped while their data directories are archived, archives
are checksummed and shipped to a NAS (rsync), an S3 bucket or MinIO, and the
restore path reverses this without ever deleting the data it replaces.
"""

from .helpers.constants import VERSION

__version__ = VERSION

from .helpers import Config, get_logger, log_manager
from .errors import DockvaultError
from .cores import (
    BackupManager,
    RestoreManager,
    DisasterRecoveryManager,
    HealthReporter,
)
from .backends import create_backend

__all__ = [
    '__version__',
    'Config',
    'get_logger',
    'log_manager',
    'DockvaultError',
    'BackupManager',
    'RestoreManager',
    'DisasterRecoveryManager',
    'HealthReporter',
    'create_backend',
]
