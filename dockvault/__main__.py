#!/usr/bin/env python3
################################################################################
# DOCKVAULT
#
# @file:        __main__.py
# @module:      dockvault.__main__
# @description: Typer-based CLI entry point
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
dockvault main CLI.

Typer-based CLI following the "tool bench" pattern:
- Configuration is loaded once at startup
- Commands retrieve tools from context instead of parameters
- Commands live in dockvault/commands and register themselves
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer

from .commands import (
    backup_commands,
    config_commands,
    disaster_recovery_commands,
    health_commands,
    minio_commands,
    restore_commands,
)
from .cores.safe_exit_manager import SafeExitManager
from .errors import ConfigError
from .helpers import Config, get_logger, log_manager
from .helpers.constants import VERSION

app = typer.Typer(
    add_completion=False,
    help="dockvault – consistent backup, restore and disaster recovery for Docker hosts.",
)
logger = get_logger(__name__)

# Commands that must work without (or before creating) a config file
CONFIGLESS_COMMANDS = {"config", "version"}


# -------------------------
# Application Context
# -------------------------

@app.callback()
def initialize_context(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file."
    ),
    log_level: str = typer.Option(
        "INFO", "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="No log output on the console (log file only)."
    ),
):
    """
    Initialize application context before any command runs.
    Sets up logging and loads configuration once.
    """
    # Cron/systemd: kein TTY, nur Logdatei
    console_logging = not quiet and sys.stdout.isatty()
    try:
        log_manager.configure(level=log_level, console=console_logging)
    except ValueError as e:
        typer.echo(f"✗ {e}", err=True)
        raise typer.Exit(code=2)

    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet

    create = ctx.invoked_subcommand not in CONFIGLESS_COMMANDS
    try:
        cfg = Config(config_path, create=create)
    except (ConfigError, OSError) as e:
        logger.warning(f"Configuration not loaded: {e}")
        cfg = None

    if cfg is not None and log_level.upper() == "INFO":
        configured = (cfg.get('logging', 'level', 'INFO') or 'INFO').upper()
        if configured != "INFO":
            try:
                log_manager.configure(level=configured, console=console_logging)
            except ValueError:
                logger.warning(f"Ignoring invalid [logging] level: {configured}")

    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path

    SafeExitManager.get_instance().install_handlers()


# -------------------------
# Register commands
# -------------------------

backup_commands.register(app)
restore_commands.register(app)
disaster_recovery_commands.register(app)
health_commands.register(app)
minio_commands.register(app)
config_commands.register(app)


@app.command("version")
def cmd_version():
    """Show dockvault version."""
    typer.echo(f"dockvault version {VERSION}")


# -------------------------
# Entry point
# -------------------------

def cli_main():
    """Console script entry point."""
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("\nInterrupted", err=True)
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        typer.echo(f"✗ Unexpected error: {e}", err=True)
        sys.exit(1)
    finally:
        log_manager.shutdown()


if __name__ == "__main__":
    cli_main()
