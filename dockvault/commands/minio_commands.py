"""MinIO provisioning command."""

import typer

from ..backends.minio_mirror import MinioMirrorBackend
from ..errors import ConfigError
from ..helpers import get_logger
from ..helpers.constants import MINIO_NONCURRENT_EXPIRY_DAYS
from ..helpers.ui_utils import print_error, print_info, print_next_steps, require_root
from .context import ensure_config, start_operation_log
from .health_commands import print_checks

logger = get_logger(__name__)


def cmd_minio_setup(ctx: typer.Context, admin_user: str, admin_password: str,
                    expiry_days: int = MINIO_NONCURRENT_EXPIRY_DAYS):
    """Create bucket, versioning, lifecycle and the restricted backup user."""
    require_root("minio-setup")
    cfg = ensure_config(ctx)
    start_operation_log(ctx, "minio-setup")
    try:
        backend = MinioMirrorBackend(cfg)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    print_info(f"Provisioning {backend.bucket} on {backend.endpoint}")
    steps = backend.provision(admin_user, admin_password, expiry_days)
    if not print_checks("MinIO setup", steps):
        print_error("MinIO setup incomplete")
        raise typer.Exit(code=1)

    print_next_steps([
        "Set [transfer] backend = minio",
        "Run: dockvault test-connectivity",
        "Run: dockvault backup",
    ])


def register(app: typer.Typer):
    """Register MinIO commands."""

    @app.command("minio-setup")
    def _minio_setup_cmd(
        ctx: typer.Context,
        admin_user: str = typer.Option(..., "--admin-user", prompt=True, help="MinIO admin user."),
        admin_password: str = typer.Option(
            ..., "--admin-password", prompt=True, hide_input=True, help="MinIO admin password."
        ),
        expiry_days: int = typer.Option(
            MINIO_NONCURRENT_EXPIRY_DAYS, "--expiry-days", min=1,
            help="Days until noncurrent object versions expire.",
        ),
    ):
        """Provision the MinIO bucket and backup user (write-once policy)."""
        cmd_minio_setup(ctx, admin_user, admin_password, expiry_days)
