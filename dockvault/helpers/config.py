#!/usr/bin/env python3
################################################################################
# DOCKVAULT
#
# @file:        config.py
# @module:      dockvault.helpers.config
# @description: INI configuration loaded once and passed to every manager
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Configuration management for dockvault.

One ``Config`` object is built at process start (CLI callback) and handed to
every manager. Nothing reads the config file behind the caller's back.
"""

from __future__ import annotations

import configparser
import os
import re
import socket
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import ConfigError
from .constants import (
    BACKEND_NONE,
    BACKEND_TYPES,
    CONTAINER_STOP_TIMEOUT,
    DEFAULT_BACKUP_ROOT,
    DEFAULT_CHECKLIST_PATH,
    DEFAULT_CONFIG_PATHS,
    DEFAULT_DISK_WARN_PERCENT,
    DEFAULT_DR_NETWORK,
    DEFAULT_LOCAL_RETENTION,
    DEFAULT_LOG_DIR,
    DEFAULT_MANAGED_BY_LABEL,
    DEFAULT_MAX_BACKUP_AGE_HOURS,
    DEFAULT_MINIO_ALIAS,
    DEFAULT_NPM_DIR,
    DEFAULT_PORTAINER_IMAGE,
    DEFAULT_PORTAINER_NAME,
    DEFAULT_PORTAINER_PORT,
    DEFAULT_REMOTE_RETENTION,
    DEFAULT_SOURCES,
    DEFAULT_SSH_KEY,
    DEFAULT_SYSTEM_CONFIG_EXCLUDES,
    DEFAULT_SYSTEM_CONFIG_HOME,
    DEFAULT_SYSTEM_CONFIG_PATTERNS,
    HTTP_CONNECT_TIMEOUT,
    LOG_FILE_TEMPLATE,
    SSH_CONNECT_TIMEOUT,
    STALE_RESTORE_DIR_MINUTES,
)
from .logging import get_logger

logger = get_logger(__name__)

SENSITIVE_OPTION = re.compile(r'(password|secret|key|token|credential)', re.IGNORECASE)


class Config:
    """
    Configuration manager for dockvault.

    Loads configuration from an INI file and provides typed access.
    """

    def __init__(self, config_path: Optional[Path] = None, create: bool = True):
        """
        Initialize configuration.

        Args:
            config_path: Optional path to config file
            create: Write a default file if none exists
        """
        # Keine Interpolation: Secrets duerfen '%' enthalten
        self._config = configparser.ConfigParser(interpolation=None)
        self._load_defaults()

        self.config_file = self._find_config_file(config_path)
        if self.config_file.exists():
            self._load_config()
        elif create:
            logger.info(f"No configuration found. Creating default at {self.config_file}")
            self.save()

    # --------------- Properties ---------------

    @property
    def backup_root(self) -> Path:
        return self.getpath('backup', 'backup_root', DEFAULT_BACKUP_ROOT)

    @property
    def sources(self) -> List[Path]:
        """Directory roots that are archived one archive per root."""
        return [Path(s).expanduser() for s in self.getlist('backup', 'sources', DEFAULT_SOURCES)]

    @property
    def stop_timeout(self) -> int:
        return self.getint('backup', 'stop_timeout', CONTAINER_STOP_TIMEOUT)

    @property
    def transfer_backend(self) -> str:
        return (self.get('transfer', 'backend', BACKEND_NONE) or BACKEND_NONE).strip().lower()

    @property
    def hostname(self) -> str:
        """Host prefix used for remote object layout."""
        return self.get('transfer', 'hostname', '') or socket.gethostname()

    @property
    def log_dir(self) -> Path:
        return self.getpath('logging', 'log_dir', DEFAULT_LOG_DIR)

    def log_file_for(self, operation: str) -> Path:
        """Operation-specific log file, e.g. dockvault-backup.log."""
        return self.log_dir / LOG_FILE_TEMPLATE.format(operation=operation)

    # --------------- Core Methods ---------------

    def get(self, section: str, option: str, fallback: Any = None) -> Any:
        """Get configuration value with fallback."""
        try:
            return self._config.get(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback

    def getint(self, section: str, option: str, fallback: int = 0) -> int:
        try:
            return self._config.getint(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback
        except ValueError:
            logger.warning(f"Invalid integer for [{section}] {option}, using {fallback}")
            return fallback

    def getboolean(self, section: str, option: str, fallback: bool = False) -> bool:
        try:
            return self._config.getboolean(section, option)
        except (configparser.NoSectionError, configparser.NoOptionError):
            return fallback
        except ValueError:
            logger.warning(f"Invalid boolean for [{section}] {option}, using {fallback}")
            return fallback

    def getlist(self, section: str, option: str, fallback: Optional[List[str]] = None) -> List[str]:
        """Comma or newline separated list."""
        raw = self.get(section, option, None)
        if raw is None:
            return list(fallback or [])
        return [item.strip() for item in re.split(r'[,\n]', raw) if item.strip()]

    def getpath(self, section: str, option: str, fallback: str = '') -> Path:
        return Path(self.get(section, option, fallback) or fallback).expanduser()

    def set(self, section: str, option: str, value: Any) -> None:
        """Set configuration value."""
        if not self._config.has_section(section):
            self._config.add_section(section)
        if isinstance(value, (list, tuple)):
            value = ','.join(str(v) for v in value)
        self._config.set(section, option, str(value))

    def require(self, section: str, *options: str) -> Dict[str, str]:
        """
        Fetch mandatory options.

        Raises:
            ConfigError: If any option is empty
        """
        values = {opt: (self.get(section, opt, '') or '').strip() for opt in options}
        missing = [opt for opt, val in values.items() if not val]
        if missing:
            raise ConfigError(
                f"Missing [{section}] settings: {', '.join(missing)} (config: {self.config_file})"
            )
        return values

    def save(self) -> None:
        """Save configuration to file atomically with mode 0600 (contains secrets)."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.config_file.parent,
            prefix='.dockvault-config-',
            suffix='.tmp'
        )
        try:
            with os.fdopen(temp_fd, 'w', encoding='utf-8') as f:
                self._config.write(f)
            os.replace(temp_path, self.config_file)
            os.chmod(self.config_file, 0o600)
            logger.info(f"Configuration saved to {self.config_file}")
        except Exception as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            logger.error(f"Failed to save configuration: {e}")
            raise

    def as_masked_dict(self) -> Dict[str, Dict[str, str]]:
        """All sections with secrets masked (for display)."""
        result: Dict[str, Dict[str, str]] = {}
        for section in self._config.sections():
            result[section] = {}
            for option, value in self._config.items(section):
                if value and SENSITIVE_OPTION.search(option) and not option.endswith('_file'):
                    value = f"{value[:3]}***MASKED***" if len(value) > 3 else '***MASKED***'
                result[section][option] = value
        return result

    def validate(self) -> List[str]:
        """
        Validate the configuration.

        Returns:
            List of error messages (empty if everything is fine)
        """
        errors = []

        backend = self.transfer_backend
        if backend not in BACKEND_TYPES:
            errors.append(f"[transfer] backend must be one of {', '.join(BACKEND_TYPES)}: {backend}")

        required = {
            'nas': ('host', 'user', 'remote_dir'),
            's3': ('endpoint', 'bucket', 'access_key', 'secret_key'),
            'minio': ('endpoint', 'bucket', 'access_key', 'secret_key'),
        }
        for option in required.get(backend, ()):
            if not (self.get(backend, option, '') or '').strip():
                errors.append(f"[{backend}] {option} is required for backend '{backend}'")

        if backend == 's3':
            endpoint = self.get('s3', 'endpoint', '') or ''
            if endpoint and not endpoint.startswith(('http://', 'https://')):
                errors.append(f"[s3] endpoint must start with http:// or https://: {endpoint}")

        for section, option in (('backup', 'local_retention'), ('transfer', 'remote_retention')):
            if self.getint(section, option, 1) < 1:
                errors.append(f"[{section}] {option} must be >= 1")

        if self.stop_timeout < 0:
            errors.append("[backup] stop_timeout must be >= 0")

        if not self.sources:
            errors.append("[backup] sources is empty")

        return errors

    # --------------- Private Methods ---------------

    @staticmethod
    def _get_default_config() -> Dict[str, Dict[str, Any]]:
        """
        Get default configuration structure.

        Returns:
            Dictionary of default configuration sections and values
        """
        return {
            'backup': {
                'backup_root': DEFAULT_BACKUP_ROOT,
                'sources': ','.join(DEFAULT_SOURCES),
                'system_configs': 'true',
                'system_config_home': DEFAULT_SYSTEM_CONFIG_HOME,
                'system_config_patterns': ','.join(DEFAULT_SYSTEM_CONFIG_PATTERNS),
                'system_config_excludes': ','.join(DEFAULT_SYSTEM_CONFIG_EXCLUDES),
                'local_retention': DEFAULT_LOCAL_RETENTION,
                'stop_timeout': CONTAINER_STOP_TIMEOUT,
                'lock_file': '',
            },
            'transfer': {
                'backend': BACKEND_NONE,
                'hostname': '',
                'remote_retention': DEFAULT_REMOTE_RETENTION,
            },
            'nas': {
                'host': '',
                'user': '',
                'remote_dir': '',
                'ssh_key': DEFAULT_SSH_KEY,
                'connect_timeout': SSH_CONNECT_TIMEOUT,
            },
            's3': {
                'endpoint': '',
                'bucket': '',
                'access_key': '',
                'secret_key': '',
                'connect_timeout': HTTP_CONNECT_TIMEOUT,
            },
            'minio': {
                'alias': DEFAULT_MINIO_ALIAS,
                'endpoint': '',
                'bucket': '',
                'access_key': '',
                'secret_key': '',
            },
            'restore': {
                'safety_backup_dir': tempfile.gettempdir(),
                'temp_dir': tempfile.gettempdir(),
                'stale_temp_minutes': STALE_RESTORE_DIR_MINUTES,
            },
            'disaster_recovery': {
                'network': DEFAULT_DR_NETWORK,
                'portainer_name': DEFAULT_PORTAINER_NAME,
                'portainer_image': DEFAULT_PORTAINER_IMAGE,
                'portainer_data': '/root/portainer',
                'portainer_port': DEFAULT_PORTAINER_PORT,
                'managed_by_label': DEFAULT_MANAGED_BY_LABEL,
                'checklist_path': DEFAULT_CHECKLIST_PATH,
                'npm_dir': DEFAULT_NPM_DIR,
            },
            'health': {
                'vpn_check': 'true',
                'max_backup_age_hours': DEFAULT_MAX_BACKUP_AGE_HOURS,
                'disk_warn_percent': DEFAULT_DISK_WARN_PERCENT,
            },
            'logging': {
                'level': 'INFO',
                'log_dir': DEFAULT_LOG_DIR,
            },
        }

    def _load_defaults(self) -> None:
        for section, values in self._get_default_config().items():
            self._config[section] = {k: str(v) for k, v in values.items()}

    def _find_config_file(self, config_path: Optional[Path] = None) -> Path:
        """
        Find or determine configuration file path.

        Args:
            config_path: Explicitly provided configuration path
        """
        if config_path:
            return Path(config_path).expanduser().resolve()

        search_order = [DEFAULT_CONFIG_PATHS['user'], DEFAULT_CONFIG_PATHS['root']]
        for location in search_order:
            location = Path(location).expanduser()
            if location.exists():
                if os.access(location, os.R_OK):
                    logger.debug(f"Using config file: {location}")
                    return location
                logger.warning(f"Config file exists but not readable: {location}")

        # Root -> /etc, sonst User-Config
        if os.geteuid() == 0:
            return Path(DEFAULT_CONFIG_PATHS['root'])
        return Path(DEFAULT_CONFIG_PATHS['user']).expanduser()

    def _load_config(self) -> None:
        """Load configuration from file with UTF-8 encoding."""
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                self._config.read_file(f)
        except (configparser.Error, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot parse {self.config_file}: {e}") from e
        logger.debug(f"Configuration loaded from {self.config_file}")


def create_default_config(path: Path, force: bool = False) -> Config:
    """
    Write a default configuration file.

    Args:
        path: Target file
        force: Overwrite an existing file

    Raises:
        ConfigError: If the file exists and force is False
    """
    path = Path(path).expanduser()
    if path.exists() and not force:
        raise ConfigError(f"Config already exists: {path} (use --force to overwrite)")
    if path.exists():
        path.unlink()
    return Config(path, create=True)
