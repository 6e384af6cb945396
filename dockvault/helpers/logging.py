################################################################################
# DOCKVAULT
#
# @file:        logging.py
# @module:      dockvault.helpers.logging
# @description: Central logging setup with per-operation log files
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Logging for dockvault.

Every module grabs its logger via ``get_logger(__name__)``. The CLI configures
the shared ``log_manager`` once per run:

- an operation-specific log file (``dockvault-backup.log``, ...) that always
  receives every line, so scheduled runs are fully traceable
- an optional console handler for interactive runs (suppressed for cron/quiet)

Structured context is passed through ``extra={...}`` and rendered as
``key=value`` pairs behind the message.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from .constants import LOG_DATE_FORMAT, LOG_FORMAT

ROOT_LOGGER_NAME = "dockvault"

# Attributes every LogRecord carries; everything else came in via extra={...}
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class Colors:
    """ANSI color codes for console output."""

    RESET = "\033[0m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    BOLD_RED = "\033[1;31m"

    LEVELS = {
        logging.DEBUG: DIM,
        logging.INFO: CYAN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }


class StructuredFormatter(logging.Formatter):
    """
    Formatter that appends ``extra`` fields as ``key=value`` pairs.

    Args:
        use_colors: Colorize the level name (console only)
    """

    def __init__(self, fmt: str = LOG_FORMAT, datefmt: str = LOG_DATE_FORMAT,
                 use_colors: bool = False):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        if self.use_colors:
            color = Colors.LEVELS.get(record.levelno, "")
            record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        try:
            line = super().format(record)
        finally:
            record.levelname = original_levelname

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if fields:
            rendered = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
            line = f"{line} [{rendered}]"
        return line


class LogManager:
    """Owns the handlers attached to the ``dockvault`` logger hierarchy."""

    def __init__(self):
        self._root = logging.getLogger(ROOT_LOGGER_NAME)
        self._root.setLevel(logging.INFO)
        self._root.propagate = False
        self._console_handler: Optional[logging.Handler] = None
        self._file_handler: Optional[logging.Handler] = None
        self.log_file: Optional[Path] = None

    def configure(
        self,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
    ) -> None:
        """
        (Re)configure logging.

        Args:
            level: Level name (DEBUG, INFO, WARNING, ERROR)
            log_file: File that receives every line (appended)
            console: Echo to stderr (interactive runs)
        """
        numeric_level = logging.getLevelName(level.upper())
        if not isinstance(numeric_level, int):
            raise ValueError(f"Invalid log level: {level}")
        self._root.setLevel(numeric_level)

        self._remove_handler(self._console_handler)
        self._console_handler = None
        if console:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter(use_colors=sys.stderr.isatty()))
            self._root.addHandler(handler)
            self._console_handler = handler

        if log_file is not None:
            self.set_log_file(log_file)

    def set_log_file(self, log_file: Path) -> Optional[Path]:
        """
        Route all records into ``log_file`` (append mode).

        Falls back to console-only logging if the file cannot be opened.

        Returns:
            The active log file or None
        """
        log_file = Path(log_file)
        self._remove_handler(self._file_handler)
        self._file_handler = None
        self.log_file = None
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        except OSError as e:
            self._root.warning(f"Cannot open log file {log_file}: {e}")
            return None

        handler.setFormatter(StructuredFormatter())
        self._root.addHandler(handler)
        self._file_handler = handler
        self.log_file = log_file
        return log_file

    def shutdown(self) -> None:
        """Detach and close all handlers."""
        self._remove_handler(self._console_handler)
        self._remove_handler(self._file_handler)
        self._console_handler = None
        self._file_handler = None
        self.log_file = None

    def _remove_handler(self, handler: Optional[logging.Handler]) -> None:
        if handler is None:
            return
        self._root.removeHandler(handler)
        handler.close()


log_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the dockvault hierarchy.

    Args:
        name: Usually ``__name__`` of the calling module
    """
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
