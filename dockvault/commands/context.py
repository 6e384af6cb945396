"""
Tool bench accessors shared by all command modules.

The callback in ``__main__`` puts the Config on ``ctx.obj``; everything else
(runtime adapter, backend) is created lazily on first use and cached there.
"""

from typing import Optional

import typer

from ..backends import RemoteBackend, create_backend
from ..cores.container_guard import DockerRuntime
from ..errors import ConfigError
from ..helpers import Config, get_logger, log_manager
from ..helpers.ui_utils import print_error, print_info

logger = get_logger(__name__)


def get_config(ctx: typer.Context) -> Optional[Config]:
    """Get config from context."""
    return (ctx.obj or {}).get("config")


def ensure_config(ctx: typer.Context) -> Config:
    """Ensure config exists or exit."""
    cfg = get_config(ctx)
    if not cfg:
        print_error("No configuration found")
        print_info("Run: dockvault config new")
        raise typer.Exit(code=1)
    return cfg


def get_runtime(ctx: typer.Context) -> DockerRuntime:
    if "runtime" not in ctx.obj:
        ctx.obj["runtime"] = DockerRuntime()
    return ctx.obj["runtime"]


def get_backend(ctx: typer.Context) -> Optional[RemoteBackend]:
    """Configured remote backend (None when transfer is disabled)."""
    if "backend" not in ctx.obj:
        cfg = ensure_config(ctx)
        try:
            ctx.obj["backend"] = create_backend(cfg)
        except ConfigError as e:
            print_error(str(e))
            print_info("Check the config with: dockvault config validate")
            raise typer.Exit(code=1)
    return ctx.obj["backend"]


def ensure_backend(ctx: typer.Context) -> RemoteBackend:
    backend = get_backend(ctx)
    if backend is None:
        print_error("No remote backend configured ([transfer] backend = none)")
        raise typer.Exit(code=1)
    return backend


def start_operation_log(ctx: typer.Context, operation: str) -> None:
    """Append this run's log lines to the operation's own log file."""
    cfg = get_config(ctx)
    if cfg is None:
        return
    log_file = log_manager.set_log_file(cfg.log_file_for(operation))
    if log_file:
        logger.debug(f"Logging to {log_file}")
