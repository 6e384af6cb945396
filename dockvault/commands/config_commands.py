"""Configuration management commands."""

from pathlib import Path
from typing import Optional

import typer
from rich.markup import escape

from ..errors import ConfigError
from ..helpers import Config, create_default_config, get_logger
from ..helpers.ui_utils import (
    console,
    create_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from .context import ensure_config

logger = get_logger(__name__)


# -------------------------
# Commands
# -------------------------

def cmd_config_show(ctx: typer.Context):
    """Show current configuration (secrets masked)."""
    cfg = ensure_config(ctx)

    print_info(f"Configuration file: {cfg.config_file}")
    for section, values in cfg.as_masked_dict().items():
        table = create_table(escape(f"[{section}]"), [("Option", "cyan"), ("Value", "white")])
        for option, value in values.items():
            table.add_row(option, escape(value))
        console.print(table)


def cmd_config_new(path: Optional[Path] = None, force: bool = False):
    """Create a new configuration file with defaults."""
    try:
        if path is None:
            # Zielpfad wie beim Laden bestimmen, ohne Datei anzulegen
            path = Config(create=False).config_file
        cfg = create_default_config(path, force=force)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    except OSError as e:
        print_error(f"Cannot write {path}: {e}")
        raise typer.Exit(code=1)

    print_success(f"Config created at: {cfg.config_file}")
    print_info("Settings to review:")
    console.print("  • [backup] sources, backup_root")
    console.print("  • [transfer] backend (none, nas, s3, minio) and its section")
    console.print("  • [disaster_recovery] network and Portainer settings")


def cmd_config_validate(ctx: typer.Context):
    """Validate the configuration."""
    cfg = ensure_config(ctx)
    errors = cfg.validate()
    if errors:
        for error in errors:
            print_error(error)
        raise typer.Exit(code=1)

    for source in cfg.sources:
        if not source.exists():
            print_warning(f"Source does not exist (will be skipped): {source}")
    print_success(f"Configuration valid: {cfg.config_file}")


def register(app: typer.Typer):
    """Register configuration commands."""

    config_app = typer.Typer(name="config", help="Configuration management.", add_completion=False)

    @config_app.command("show")
    def _config_show_cmd(ctx: typer.Context):
        """Show current configuration."""
        cmd_config_show(ctx)

    @config_app.command("new")
    def _config_new_cmd(
        path: Optional[Path] = typer.Option(None, "--path", "-p", help="Where to write the config."),
        force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file."),
    ):
        """Create a new configuration file."""
        cmd_config_new(path, force)

    @config_app.command("validate")
    def _config_validate_cmd(ctx: typer.Context):
        """Check the configuration for errors."""
        cmd_config_validate(ctx)

    app.add_typer(config_app, name="config")
