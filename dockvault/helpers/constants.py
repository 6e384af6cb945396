"""
Constants used throughout the dockvault application.

This module defines all constant values used across different modules
to ensure consistency and ease of maintenance.
"""

import re
from pathlib import Path

# Version information
VERSION = "1.0.0"

# Default paths
DEFAULT_CONFIG_PATHS = {
    'root': Path('/etc/dockvault.conf'),
    'user': Path.home() / '.config' / 'dockvault' / 'dockvault.conf'
}

# Backup layout
DEFAULT_BACKUP_ROOT = '/root/backup'
DEFAULT_SOURCES = ['/root/portainer', '/root/tools']
LATEST_LINK_NAME = 'latest'
LATEST_MARKER_NAME = 'latest.txt'
METADATA_FILE = 'backup_metadata.json'
CONTAINER_STATE_FILE = 'container_states.txt'
OWNERSHIP_FILE = 'ownership_metadata.txt'
OWNERSHIP_SCRIPT = 'restore_ownership.sh'
ARCHIVE_SUFFIX = '.tar.gz'
CHECKSUM_SUFFIX = '.sha256'

# Backup ids: YYYYMMDD_HHMMSS
BACKUP_ID_FORMAT = '%Y%m%d_%H%M%S'
BACKUP_ID_PATTERN = re.compile(r'^\d{8}_\d{6}$')

# "System configs" file-set archive
SYSTEM_CONFIGS_NAME = 'system_configs'
DEFAULT_SYSTEM_CONFIG_HOME = '/root'
DEFAULT_SYSTEM_CONFIG_PATTERNS = [
    '*.sh', '*.yml', '*.yaml', '*.json', '*.conf', '.bashrc', '.profile',
]
DEFAULT_SYSTEM_CONFIG_EXCLUDES = ['tools', 'portainer', 'backup', '.cache', 'snap']
SYSTEM_CONFIG_MAX_DEPTH = 2

# tar flags
TAR_CREATE_FLAGS = [
    '--preserve-permissions',
    '--same-owner',
    '--numeric-owner',
    '--xattrs',
    '--acls',
]
TAR_EXTRACT_FLAGS = [
    '--same-owner',
    '--numeric-owner',
    '--preserve-permissions',
]

# Retention
DEFAULT_LOCAL_RETENTION = 3
DEFAULT_REMOTE_RETENTION = 30

# Timeouts (in seconds)
CONTAINER_STOP_TIMEOUT = 30
HTTP_CONNECT_TIMEOUT = 10
SSH_CONNECT_TIMEOUT = 30
STALE_RESTORE_DIR_MINUTES = 60

# Transfer backends
BACKEND_NONE = 'none'
BACKEND_NAS = 'nas'
BACKEND_S3 = 's3'
BACKEND_MINIO = 'minio'
BACKEND_TYPES = (BACKEND_NONE, BACKEND_NAS, BACKEND_S3, BACKEND_MINIO)

DEFAULT_SSH_KEY = '/root/.ssh/backup_key'
DEFAULT_MINIO_ALIAS = 'minio-backup'
MINIO_NONCURRENT_EXPIRY_DAYS = 90

# S3 content types by suffix (first match wins)
S3_CONTENT_TYPES = [
    ('.tar.gz', 'application/gzip'),
    ('.json', 'application/json'),
    ('.sha256', 'text/plain'),
    ('.txt', 'text/plain'),
    ('.sh', 'text/x-shellscript'),
]
S3_DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# Restore
RESTORE_TEMP_PREFIX = 'restore_'
SAFETY_BACKUP_PREFIX = 'pre_restore_backup_'
RELOCATE_SUFFIX = '.old'

# Disaster recovery
DEFAULT_DR_NETWORK = 'prod-network'
DEFAULT_PORTAINER_IMAGE = 'portainer/portainer-ce:latest'
DEFAULT_PORTAINER_NAME = 'portainer'
DEFAULT_PORTAINER_PORT = 9000
DEFAULT_MANAGED_BY_LABEL = 'portainer-script'
DEFAULT_CHECKLIST_PATH = '/root/disaster-recovery-checklist.md'
DEFAULT_NPM_DIR = '/root/tools/nginx-proxy-manager'

# Health
HEALTH_LOG_TAIL_LINES = 50
HEALTH_LOG_ERROR_MARKERS = ('error', 'failed', '✗')
DEFAULT_MAX_BACKUP_AGE_HOURS = 26
DEFAULT_DISK_WARN_PERCENT = 90

# Locking
LOCK_FILE_NAME = 'dockvault.lock'

# Logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
DEFAULT_LOG_DIR = '/var/log'
LOG_FILE_TEMPLATE = 'dockvault-{operation}.log'
