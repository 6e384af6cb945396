"""
Shared pytest fixtures for dockvault tests.

Provides a throw-away configuration below tmp_path, a fake container runtime
and a factory for complete on-disk backups.
"""

import tarfile
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from dockvault.cores.archive_builder import (
    archive_name,
    collect_ownership,
    compute_checksum,
    write_checksum_file,
    write_ownership_metadata,
)
from dockvault.cores.backup_manager import update_latest_link
from dockvault.cores.safe_exit_manager import SafeExitManager
from dockvault.errors import ContainerOpFailure
from dockvault.helpers.config import Config
from dockvault.helpers.constants import CONTAINER_STATE_FILE, METADATA_FILE, OWNERSHIP_FILE
from dockvault.helpers.logging import log_manager
from dockvault.types import ArchiveRecord, BackupMetadata


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external tools")
    config.addinivalue_line("markers", "integration: tests that run real tar/filesystem operations")


# =============================================================================
# Global state
# =============================================================================


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh SafeExitManager and detached log handlers for every test."""
    SafeExitManager.reset_instance()
    yield
    SafeExitManager.reset_instance()
    log_manager.shutdown()


# =============================================================================
# CLI / privileges
# =============================================================================


@pytest.fixture
def cli_runner():
    """Typer CLI runner for testing commands."""
    return CliRunner()


@pytest.fixture
def mock_root():
    """Mock os.geteuid() to return 0 (root)."""
    with patch("os.geteuid", return_value=0):
        yield


@pytest.fixture
def mock_non_root():
    """Mock os.geteuid() to return non-zero (not root)."""
    with patch("os.geteuid", return_value=1000):
        yield


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for container operations."""
    mock_client = MagicMock()
    mock_client.containers.list.return_value = []
    mock_client.ping.return_value = True

    with patch("docker.from_env", return_value=mock_client):
        yield mock_client


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def tmp_config(tmp_path):
    """Create a temporary dockvault config file with every path below tmp_path."""
    content = f"""
[backup]
backup_root = {tmp_path}/backup
sources = {tmp_path}/data/portainer,{tmp_path}/data/tools
system_configs = false
system_config_home = {tmp_path}/home
local_retention = 3
stop_timeout = 5
lock_file = {tmp_path}/run/dockvault.lock

[transfer]
backend = none
hostname = testhost
remote_retention = 30

[restore]
safety_backup_dir = {tmp_path}/safety
temp_dir = {tmp_path}/restore-tmp
stale_temp_minutes = 60

[disaster_recovery]
network = prod-network
portainer_data = {tmp_path}/data/portainer
checklist_path = {tmp_path}/disaster-recovery-checklist.md
npm_dir = {tmp_path}/data/tools/nginx-proxy-manager

[health]
vpn_check = false
max_backup_age_hours = 26
disk_warn_percent = 90

[logging]
level = INFO
log_dir = {tmp_path}/logs
"""
    config_file = tmp_path / "dockvault.conf"
    config_file.write_text(content.lstrip(), encoding="utf-8")
    return config_file


@pytest.fixture
def config(tmp_config):
    return Config(tmp_config)


@pytest.fixture
def source_dirs(config):
    """Populate both configured source roots with a few files."""
    portainer, tools = config.sources
    (portainer / "compose").mkdir(parents=True)
    (portainer / "portainer.db").write_bytes(b"portainer-db")
    (portainer / "compose" / "1").write_text("version: '3'\n")
    (tools / "nginx-proxy-manager" / "data").mkdir(parents=True)
    (tools / "nginx-proxy-manager" / "data" / "database.sqlite").write_bytes(b"npm")
    (tools / "nextcloud").mkdir()
    (tools / "nextcloud" / "config.php").write_text("<?php\n")
    return [portainer, tools]


@pytest.fixture
def mock_ctx(config):
    """Mock Typer context with config (for direct cmd_* calls)."""
    ctx = MagicMock()
    ctx.obj = {"config": config}
    return ctx


# =============================================================================
# Container runtime
# =============================================================================


class FakeRuntime:
    """In-memory stand-in for DockerRuntime that records every call."""

    def __init__(self, running=None):
        self.running = list(running or [])
        self.calls = []
        self.stop_failures = set()
        self.start_failures = set()
        self.networks = set()
        self.reachable = True
        self.pruned = 0
        self.on_stop = None
        self.on_start = None

    def ping(self):
        return self.reachable

    def version(self):
        return "24.0.7"

    def running_containers(self):
        return sorted(self.running)

    def count_containers(self):
        return len(self.running) + 1

    def stop(self, name, timeout=30):
        self.calls.append(("stop", name))
        if name in self.stop_failures:
            raise ContainerOpFailure(name, "stop", "refused")
        if self.on_stop is not None:
            self.on_stop(name)

    def start(self, name):
        self.calls.append(("start", name))
        if name in self.start_failures:
            raise ContainerOpFailure(name, "start", "no such container")
        if self.on_start is not None:
            self.on_start(name)

    def remove(self, name):
        self.calls.append(("remove", name))
        return False

    def network_exists(self, name):
        self.calls.append(("network_exists", name))
        return name in self.networks

    def create_network(self, name, driver="bridge"):
        self.calls.append(("create_network", name))
        self.networks.add(name)

    def prune_containers(self):
        self.calls.append(("prune_containers",))
        return self.pruned

    def pull_image(self, image):
        self.calls.append(("pull_image", image))

    def run_container(self, image, name, **kwargs):
        self.calls.append(("run_container", name, kwargs))
        return "0123456789abcdef" * 4

    def stopped(self):
        return [c[1] for c in self.calls if c[0] == "stop"]

    def started(self):
        return [c[1] for c in self.calls if c[0] == "start"]


@pytest.fixture
def fake_runtime():
    return FakeRuntime(running=["cache", "db", "web"])


# =============================================================================
# Backups on disk
# =============================================================================


@pytest.fixture
def make_backup(config):
    """
    Factory for a complete backup directory built from the current source roots.

    Archives are real tar.gz files with matching .sha256 sidecars and metadata.
    """

    def _make(backup_id="20250101_120000", latest=True, root=None):
        root = Path(root or config.backup_root)
        backup_dir = root / backup_id
        backup_dir.mkdir(parents=True)
        records = {}
        ownership = {}
        for source in config.sources:
            if not source.is_dir():
                continue
            archive = backup_dir / archive_name(source.name, backup_id)
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(str(source), arcname=source.name)
            checksum = compute_checksum(archive)
            write_checksum_file(archive, checksum)
            records[source.name] = ArchiveRecord(file=archive.name, checksum=checksum,
                                                 source_root=str(source))
            ownership[str(source)] = collect_ownership(source)

        (backup_dir / CONTAINER_STATE_FILE).write_text("db\nweb\n")
        write_ownership_metadata(backup_dir / OWNERSHIP_FILE, ownership)
        BackupMetadata(
            backup_timestamp=backup_id,
            backup_date=datetime.now().isoformat(timespec="seconds"),
            hostname="testhost",
            source_directories=[r.source_root for r in records.values()],
            archives=records,
        ).save(backup_dir / METADATA_FILE)
        if latest:
            update_latest_link(root, backup_id)
        return backup_dir

    return _make
