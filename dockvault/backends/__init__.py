"""
Remote transfer backends.

The backend is chosen once from ``[transfer] backend`` and handed around as a
``RemoteBackend``; no call site checks which store is configured.
"""

from typing import Optional

from ..errors import ConfigError
from ..helpers.config import Config
from ..helpers.constants import BACKEND_MINIO, BACKEND_NAS, BACKEND_NONE, BACKEND_S3
from .base import RemoteBackend
from .minio_mirror import MinioMirrorBackend
from .s3_signed import S3SignedBackend
from .ssh_rsync import SshRsyncBackend

BACKENDS = {
    BACKEND_NAS: SshRsyncBackend,
    BACKEND_S3: S3SignedBackend,
    BACKEND_MINIO: MinioMirrorBackend,
}


def create_backend(config: Config) -> Optional[RemoteBackend]:
    """
    Build the configured backend.

    Returns:
        Backend instance, or None when transfer is disabled

    Raises:
        ConfigError: unknown backend or missing settings
    """
    backend_type = config.transfer_backend
    if backend_type == BACKEND_NONE:
        return None
    try:
        backend_cls = BACKENDS[backend_type]
    except KeyError:
        raise ConfigError(
            f"Unknown transfer backend '{backend_type}' (choose: none, {', '.join(BACKENDS)})"
        ) from None
    return backend_cls(config)


__all__ = [
    'RemoteBackend',
    'SshRsyncBackend',
    'S3SignedBackend',
    'MinioMirrorBackend',
    'create_backend',
]
