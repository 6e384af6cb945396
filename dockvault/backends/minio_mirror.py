"""
MinIO client (``mc``) mirror backend.

The connection alias is registered once per process; afterwards push and
fetch are plain ``mc mirror`` runs. Buckets provisioned by ``provision()``
are versioned and deny DeleteObject to the backup user, so failing deletes
are the normal case.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import List, Optional

from ..errors import RetentionDeleteDenied, TransferFailure
from ..helpers.constants import DEFAULT_MINIO_ALIAS, LATEST_MARKER_NAME, MINIO_NONCURRENT_EXPIRY_DAYS
from ..helpers.logging import get_logger
from ..helpers.ui_utils import SubprocessError, run_command
from ..types import CheckResult, CheckStatus
from .base import RemoteBackend

logger = get_logger(__name__)

BACKUP_POLICY_NAME = "backup-policy"


def lifecycle_document(days: int = MINIO_NONCURRENT_EXPIRY_DAYS) -> dict:
    return {
        "Rules": [
            {
                "ID": "expire-noncurrent-versions",
                "Status": "Enabled",
                "Filter": {"Prefix": ""},
                "NoncurrentVersionExpiration": {"NoncurrentDays": days},
            }
        ]
    }


def backup_policy_document(bucket: str) -> dict:
    """Write/read/list allowed, deletes denied (ransomware mitigation)."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:PutObject", "s3:GetObject", "s3:ListBucket",
                           "s3:GetBucketLocation", "s3:PutObjectTagging"],
                "Resource": [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"],
            },
            {
                "Effect": "Deny",
                "Action": ["s3:DeleteObject", "s3:DeleteObjectVersion", "s3:DeleteBucket"],
                "Resource": [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"],
            },
        ],
    }


class MinioMirrorBackend(RemoteBackend):
    """Objects live at ``{alias}/{bucket}/{hostname}/{id}/``."""

    name = "minio"

    def __init__(self, config):
        super().__init__(config)
        settings = config.require("minio", "endpoint", "bucket", "access_key", "secret_key")
        self.endpoint = settings["endpoint"].rstrip("/")
        self.bucket = settings["bucket"]
        self.access_key = settings["access_key"]
        self.secret_key = settings["secret_key"]
        self.alias = config.get("minio", "alias", DEFAULT_MINIO_ALIAS) or DEFAULT_MINIO_ALIAS
        self._alias_ready = False

    def describe(self) -> str:
        return f"minio ({self.endpoint}/{self.bucket}/{self.hostname}/)"

    def _path(self, *parts: str) -> str:
        return "/".join([self.alias, self.bucket, self.hostname, *parts])

    def _ensure_alias(self) -> None:
        if self._alias_ready:
            return
        try:
            run_command(["mc", "alias", "set", self.alias, self.endpoint,
                         self.access_key, self.secret_key], "mc alias set",
                        redact=[self.secret_key])
        except SubprocessError as e:
            raise TransferFailure(f"Cannot configure mc alias {self.alias}: {e}") from e
        self._alias_ready = True

    # --------------- interface ---------------

    def push(self, local_dir: Path, backup_id: str) -> str:
        self.validate_id(backup_id)
        self._ensure_alias()
        target = self._path(backup_id) + "/"
        try:
            run_command(["mc", "mirror", "--overwrite", f"{Path(local_dir)}/", target],
                        f"mc mirror {backup_id}")
        except SubprocessError as e:
            raise TransferFailure(f"Mirror to {target} failed: {e}") from e

        with tempfile.TemporaryDirectory(prefix="dockvault-marker-") as tmp:
            marker = Path(tmp) / LATEST_MARKER_NAME
            marker.write_text(f"{backup_id}\n", encoding="utf-8")
            try:
                run_command(["mc", "cp", str(marker), self._path(LATEST_MARKER_NAME)],
                            "mc cp latest marker")
            except SubprocessError as e:
                raise TransferFailure(f"Uploaded {backup_id} but could not write latest marker: {e}") from e

        logger.info(f"Mirrored backup to {target}", extra={"backend": self.name})
        return target

    def list_backups(self) -> List[str]:
        self._ensure_alias()
        try:
            result = run_command(["mc", "ls", "--json", self._path() + "/"], "mc ls")
        except SubprocessError as e:
            raise TransferFailure(f"Listing {self._path()} failed: {e}") from e

        names = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON mc output: {line}")
                continue
            if entry.get("type") == "folder" or str(entry.get("key", "")).endswith("/"):
                names.append(str(entry.get("key", "")).rstrip("/"))
        return self.filter_ids(names)

    def fetch(self, backup_id: str, dest_dir: Path) -> Path:
        self.validate_id(backup_id)
        self._ensure_alias()
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            run_command(["mc", "mirror", self._path(backup_id) + "/", f"{dest_dir}/"],
                        f"mc mirror fetch {backup_id}")
        except SubprocessError as e:
            raise TransferFailure(f"Download of {backup_id} failed: {e}") from e
        return dest_dir

    def delete(self, backup_id: str) -> None:
        self.validate_id(backup_id)
        self._ensure_alias()
        try:
            run_command(["mc", "rm", "--recursive", "--force", self._path(backup_id) + "/"],
                        f"mc rm {backup_id}")
        except SubprocessError as e:
            raise RetentionDeleteDenied(backup_id, e.stderr.strip()) from e

    def latest(self) -> Optional[str]:
        self._ensure_alias()
        result = run_command(["mc", "cat", self._path(LATEST_MARKER_NAME)], "mc cat latest",
                             check=False)
        if result.returncode != 0:
            return None
        value = result.stdout.strip()
        return value if self.filter_ids([value]) else None

    def test_connection(self) -> List[CheckResult]:
        checks = []
        try:
            self._ensure_alias()
            checks.append(CheckResult("alias", CheckStatus.OK, f"mc alias {self.alias} -> {self.endpoint}"))
        except TransferFailure as e:
            checks.append(CheckResult("alias", CheckStatus.FAIL, str(e)))
            return checks

        result = run_command(["mc", "ls", f"{self.alias}/{self.bucket}"], "mc ls bucket", check=False)
        checks.append(CheckResult(
            "bucket", CheckStatus.OK if result.returncode == 0 else CheckStatus.FAIL,
            f"Bucket {self.bucket} " + ("accessible" if result.returncode == 0
                                        else f"not accessible: {result.stderr.strip()}"),
        ))
        return checks

    # --------------- provisioning ---------------

    def provision(self, admin_user: str, admin_password: str,
                  expiry_days: int = MINIO_NONCURRENT_EXPIRY_DAYS) -> List[CheckResult]:
        """
        Create the bucket and the restricted backup user.

        Uses a separate admin alias; steps that fail are reported and the
        rest still runs (mirrors what an operator would do by hand).
        """
        admin_alias = f"{self.alias}-admin"
        steps: List[CheckResult] = []

        secrets = [admin_password, self.secret_key]

        def _step(name: str, cmd: List[str], input: Optional[str] = None) -> bool:
            try:
                run_command(cmd, name, input=input, redact=secrets)
                steps.append(CheckResult(name, CheckStatus.OK, " ".join(cmd[:3])))
                return True
            except SubprocessError as e:
                steps.append(CheckResult(name, CheckStatus.FAIL, e.stderr.strip() or str(e)))
                return False

        if not _step("admin alias", ["mc", "alias", "set", admin_alias, self.endpoint,
                                     admin_user, admin_password]):
            return steps

        bucket = f"{admin_alias}/{self.bucket}"
        _step("bucket", ["mc", "mb", "--ignore-existing", bucket])
        _step("versioning", ["mc", "version", "enable", bucket])
        _step("lifecycle", ["mc", "ilm", "import", bucket],
              input=json.dumps(lifecycle_document(expiry_days)))
        _step("user", ["mc", "admin", "user", "add", admin_alias, self.access_key, self.secret_key])

        with tempfile.TemporaryDirectory(prefix="dockvault-policy-") as tmp:
            policy_file = Path(tmp) / "backup-policy.json"
            policy_file.write_text(json.dumps(backup_policy_document(self.bucket), indent=2),
                                   encoding="utf-8")
            if _step("policy", ["mc", "admin", "policy", "create", admin_alias,
                                BACKUP_POLICY_NAME, str(policy_file)]):
                _step("policy attach", ["mc", "admin", "policy", "attach", admin_alias,
                                        BACKUP_POLICY_NAME, "--user", self.access_key])
        return steps
