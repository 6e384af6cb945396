################################################################################
# DOCKVAULT
#
# @file:        s3_signed.py
# @module:      dockvault.backends.s3_signed
# @description: S3-compatible transfer with hand-signed (HMAC-SHA1) requests
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Signed-HTTP S3 backend.

Uses the classic signature scheme (no SDK):

    StringToSign = METHOD \\n Content-MD5 \\n Content-Type \\n Date \\n Resource
    Authorization: AWS <access_key>:base64(HMAC-SHA1(secret, StringToSign))

One request per file. This path cannot tell a bad signature from a broken
network without looking at the HTTP status, so errors always carry the
status and the S3 error code when one is returned.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import formatdate
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import httpx

from ..errors import RetentionDeleteDenied, TransferFailure
from ..helpers.constants import (
    HTTP_CONNECT_TIMEOUT,
    LATEST_MARKER_NAME,
    S3_CONTENT_TYPES,
    S3_DEFAULT_CONTENT_TYPE,
)
from ..helpers.logging import get_logger
from ..types import CheckResult, CheckStatus
from .base import RemoteBackend

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024
CONNECTIVITY_OBJECT = "connectivity-test.txt"


def content_type_for(filename: str) -> str:
    for suffix, content_type in S3_CONTENT_TYPES:
        if filename.endswith(suffix):
            return content_type
    return S3_DEFAULT_CONTENT_TYPE


def md5_base64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def file_md5_base64(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


def _iter_file(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            yield chunk


def _local(tag: str) -> str:
    """Strip the XML namespace from a tag."""
    return tag.rsplit("}", 1)[-1]


class S3Signer:
    """Builds signed request headers for the classic S3 signature."""

    def __init__(self, access_key: str, secret_key: str):
        self.access_key = access_key
        self._secret = secret_key.encode("utf-8")

    @staticmethod
    def string_to_sign(method: str, resource: str, content_md5: str = "",
                       content_type: str = "", date: str = "") -> str:
        return f"{method}\n{content_md5}\n{content_type}\n{date}\n{resource}"

    def signature(self, string_to_sign: str) -> str:
        mac = hmac.new(self._secret, string_to_sign.encode("utf-8"), hashlib.sha1)
        return base64.b64encode(mac.digest()).decode("ascii")

    def headers(self, method: str, resource: str, content_md5: str = "",
                content_type: str = "", date: Optional[str] = None) -> Dict[str, str]:
        date = date or formatdate(usegmt=True)
        sig = self.signature(self.string_to_sign(method, resource, content_md5, content_type, date))
        headers = {"Date": date, "Authorization": f"AWS {self.access_key}:{sig}"}
        if content_md5:
            headers["Content-MD5"] = content_md5
        if content_type:
            headers["Content-Type"] = content_type
        return headers


class S3SignedBackend(RemoteBackend):
    """Objects live at ``{bucket}/{hostname}/{id}/{file}``."""

    name = "s3"

    def __init__(self, config, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(config)
        settings = config.require("s3", "endpoint", "bucket", "access_key", "secret_key")
        self.endpoint = settings["endpoint"].rstrip("/")
        self.bucket = settings["bucket"]
        self.signer = S3Signer(settings["access_key"], settings["secret_key"])
        self.connect_timeout = config.getint("s3", "connect_timeout", HTTP_CONNECT_TIMEOUT)
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            # Nur Connect-Timeout, Uploads duerfen beliebig lange dauern
            self._client = httpx.Client(
                base_url=self.endpoint,
                timeout=httpx.Timeout(None, connect=self.connect_timeout),
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def describe(self) -> str:
        return f"s3 ({self.endpoint}/{self.bucket}/{self.hostname}/)"

    # --------------- request helpers ---------------

    def _key(self, *parts: str) -> str:
        return "/".join([self.hostname, *parts])

    def _object_resource(self, key: str) -> str:
        return f"/{self.bucket}/{key}"

    def _request(self, method: str, key: Optional[str] = None, *,
                 params: Optional[Dict[str, str]] = None, content=None,
                 content_md5: str = "", content_type: str = "",
                 extra_headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        resource = self._object_resource(key) if key is not None else f"/{self.bucket}/"
        headers = self.signer.headers(method, resource, content_md5, content_type)
        headers.update(extra_headers or {})
        return self.client.request(method, resource, params=params, content=content,
                                   headers=headers)

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        code = ""
        try:
            root = ET.fromstring(response.content)
            for element in root.iter():
                if _local(element.tag) == "Code":
                    code = element.text or ""
                    break
        except ET.ParseError:
            pass
        return f"HTTP {response.status_code}" + (f" {code}" if code else "")

    def _put_file(self, path: Path, key: str) -> None:
        content_md5 = file_md5_base64(path)
        content_type = content_type_for(path.name)
        response = self._request(
            "PUT", key,
            content=_iter_file(path),
            content_md5=content_md5,
            content_type=content_type,
            extra_headers={
                "Content-Length": str(path.stat().st_size),
                "x-amz-tagging": f"hostname={self.hostname}",
            },
        )
        if response.status_code not in (200, 201, 204):
            raise TransferFailure(f"Upload of {key} failed: {self._error_text(response)}")

    def _put_bytes(self, key: str, data: bytes, content_type: str = "text/plain") -> httpx.Response:
        return self._request(
            "PUT", key, content=data, content_md5=md5_base64(data), content_type=content_type,
            extra_headers={"x-amz-tagging": f"hostname={self.hostname}"},
        )

    def _list(self, prefix: str, delimiter: Optional[str] = None) -> Tuple[List[str], List[str]]:
        """
        List a prefix (follows truncated listings).

        Returns:
            (common prefixes, object keys)
        """
        prefixes: List[str] = []
        keys: List[str] = []
        marker = ""
        while True:
            params = {"prefix": prefix}
            if delimiter:
                params["delimiter"] = delimiter
            if marker:
                params["marker"] = marker
            response = self._request("GET", params=params)
            if response.status_code != 200:
                raise TransferFailure(f"Listing {prefix} failed: {self._error_text(response)}")
            try:
                root = ET.fromstring(response.content)
            except ET.ParseError as e:
                raise TransferFailure(f"Unreadable bucket listing: {e}") from e

            truncated = False
            next_marker = ""
            for element in root:
                tag = _local(element.tag)
                if tag == "CommonPrefixes":
                    for child in element:
                        if _local(child.tag) == "Prefix" and child.text:
                            prefixes.append(child.text)
                elif tag == "Contents":
                    for child in element:
                        if _local(child.tag) == "Key" and child.text:
                            keys.append(child.text)
                elif tag == "IsTruncated":
                    truncated = (element.text or "").strip().lower() == "true"
                elif tag == "NextMarker":
                    next_marker = element.text or ""

            if not truncated:
                return prefixes, keys
            marker = next_marker or (keys[-1] if keys else (prefixes[-1] if prefixes else ""))
            if not marker:
                return prefixes, keys

    # --------------- interface ---------------

    def push(self, local_dir: Path, backup_id: str) -> str:
        self.validate_id(backup_id)
        files = self.local_files(local_dir)
        if not files:
            raise TransferFailure(f"Nothing to upload in {local_dir}")

        failed = []
        for path in files:
            key = self._key(backup_id, path.name)
            try:
                self._put_file(path, key)
                logger.info(f"Uploaded {path.name}", extra={"key": key})
            except (TransferFailure, httpx.HTTPError) as e:
                failed.append(path.name)
                logger.error(f"Upload failed for {path.name}: {e}", extra={"key": key})

        if failed:
            raise TransferFailure(
                f"{len(failed)} of {len(files)} file(s) failed, latest marker not updated",
                failed_items=failed,
            )

        marker_key = self._key(LATEST_MARKER_NAME)
        try:
            response = self._put_bytes(marker_key, f"{backup_id}\n".encode("utf-8"))
        except httpx.HTTPError as e:
            raise TransferFailure(f"Could not write {marker_key}: {e}") from e
        if response.status_code not in (200, 201, 204):
            raise TransferFailure(f"Could not write {marker_key}: {self._error_text(response)}")

        location = f"{self.endpoint}/{self.bucket}/{self._key(backup_id)}/"
        logger.info(f"Pushed {len(files)} file(s) to {location}", extra={"backend": self.name})
        return location

    def list_backups(self) -> List[str]:
        try:
            prefixes, _keys = self._list(f"{self.hostname}/", delimiter="/")
        except httpx.HTTPError as e:
            raise TransferFailure(f"Listing {self.bucket} failed: {e}") from e
        return self.filter_ids(p.rstrip("/").rsplit("/", 1)[-1] for p in prefixes)

    def fetch(self, backup_id: str, dest_dir: Path) -> Path:
        self.validate_id(backup_id)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        prefix = self._key(backup_id) + "/"
        try:
            _prefixes, keys = self._list(prefix)
            # Ordner-Marker und verschachtelte Keys gehoeren nicht zum Backup
            files = [k for k in keys if k[len(prefix):] and "/" not in k[len(prefix):]]
            if not files:
                raise TransferFailure(f"Backup {backup_id} not found in {self.bucket}")
            for key in files:
                target = dest_dir / key[len(prefix):]
                headers = self.signer.headers("GET", self._object_resource(key))
                with self.client.stream("GET", self._object_resource(key), headers=headers) as response:
                    if response.status_code != 200:
                        response.read()
                        raise TransferFailure(f"Download of {key} failed: {self._error_text(response)}")
                    with open(target, "wb") as f:
                        for chunk in response.iter_bytes():
                            f.write(chunk)
                logger.info(f"Downloaded {target.name}", extra={"key": key})
        except (httpx.HTTPError, OSError) as e:
            raise TransferFailure(f"Download of {backup_id} failed: {e}") from e
        return dest_dir

    def delete(self, backup_id: str) -> None:
        self.validate_id(backup_id)
        try:
            _prefixes, keys = self._list(self._key(backup_id) + "/")
            for key in keys:
                response = self._request("DELETE", key)
                if response.status_code == 403:
                    raise RetentionDeleteDenied(backup_id, self._error_text(response))
                if response.status_code not in (200, 202, 204):
                    raise TransferFailure(f"Delete of {key} failed: {self._error_text(response)}")
        except httpx.HTTPError as e:
            raise TransferFailure(f"Delete of {backup_id} failed: {e}") from e

    def latest(self) -> Optional[str]:
        try:
            response = self._request("GET", self._key(LATEST_MARKER_NAME))
        except httpx.HTTPError as e:
            raise TransferFailure(f"Reading latest marker failed: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise TransferFailure(f"Reading latest marker failed: {self._error_text(response)}")
        value = response.text.strip()
        return value if self.filter_ids([value]) else None

    def test_connection(self) -> List[CheckResult]:
        checks = []
        try:
            response = self.client.get("/")
            checks.append(CheckResult("endpoint", CheckStatus.OK,
                                      f"{self.endpoint} answered (HTTP {response.status_code})"))
        except httpx.HTTPError as e:
            checks.append(CheckResult("endpoint", CheckStatus.FAIL, f"{self.endpoint} unreachable: {e}"))
            return checks

        try:
            response = self._request("GET", params={"prefix": f"{self.hostname}/", "max-keys": "1"})
        except httpx.HTTPError as e:
            checks.append(CheckResult("auth", CheckStatus.FAIL, f"Bucket request failed: {e}"))
            return checks
        if response.status_code != 200:
            checks.append(CheckResult("auth", CheckStatus.FAIL,
                                      f"Bucket {self.bucket} not accessible: {self._error_text(response)}"))
            return checks
        checks.append(CheckResult("auth", CheckStatus.OK, f"Bucket {self.bucket} accessible"))

        key = self._key(CONNECTIVITY_OBJECT)
        payload = f"dockvault connectivity test {datetime.now().isoformat(timespec='seconds')}\n"
        try:
            response = self._put_bytes(key, payload.encode("utf-8"))
            if response.status_code not in (200, 201, 204):
                checks.append(CheckResult("write", CheckStatus.FAIL,
                                          f"Upload of {key} failed: {self._error_text(response)}"))
                return checks
            checks.append(CheckResult("write", CheckStatus.OK, f"Uploaded {key}"))

            response = self._request("GET", key)
            ok = response.status_code == 200 and response.text == payload
            checks.append(CheckResult(
                "read", CheckStatus.OK if ok else CheckStatus.FAIL,
                f"Read back {key}" if ok else f"Read back of {key} failed: {self._error_text(response)}",
            ))
        except httpx.HTTPError as e:
            checks.append(CheckResult("write", CheckStatus.FAIL, f"Test object round-trip failed: {e}"))
        return checks
