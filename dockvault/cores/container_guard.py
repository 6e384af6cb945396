################################################################################
# DOCKVAULT
#
# @file:        container_guard.py
# @module:      dockvault.cores.container_guard
# @description: Snapshot, stop and restart containers around a consistent capture
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

"""
Container lifecycle guard.

``DockerRuntime`` is the only place that talks to the Docker daemon (via the
Docker SDK). ``ContainerLifecycleGuard`` builds the backup/restore semantics on
top of it:

- ``snapshot()`` remembers which containers are running
- ``quiesce()`` stops them one by one, each with its own grace timeout
- ``resume()`` starts exactly the snapshot set again
- ``quiesced()`` wraps the window so resume runs on every exit path,
  including SIGINT/SIGTERM
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from ..errors import ContainerOpFailure
from ..helpers.constants import CONTAINER_STOP_TIMEOUT
from ..helpers.logging import get_logger
from .safe_exit_manager import SafeExitManager, ServiceContinuityHandler

logger = get_logger(__name__)


class DockerRuntime:
    """Thin adapter over the Docker SDK client."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except DockerException as e:
            logger.debug(f"Docker ping failed: {e}")
            return False

    def version(self) -> str:
        try:
            return self.client.version().get("Version", "unknown")
        except DockerException as e:
            logger.warning(f"Could not query Docker version: {e}")
            return "unknown"

    def running_containers(self) -> List[str]:
        return sorted(c.name for c in self.client.containers.list())

    def count_containers(self) -> int:
        return len(self.client.containers.list(all=True))

    def stop(self, name: str, timeout: int = CONTAINER_STOP_TIMEOUT) -> None:
        try:
            # Docker killt nach Ablauf des Timeouts selbst
            self.client.containers.get(name).stop(timeout=timeout)
        except NotFound as e:
            raise ContainerOpFailure(name, "stop", "no such container") from e
        except APIError as e:
            raise ContainerOpFailure(name, "stop", str(e.explanation or e)) from e
        except (DockerException, requests.RequestException) as e:
            raise ContainerOpFailure(name, "stop", str(e)) from e

    def start(self, name: str) -> None:
        try:
            self.client.containers.get(name).start()
        except NotFound as e:
            raise ContainerOpFailure(name, "start", "no such container") from e
        except APIError as e:
            raise ContainerOpFailure(name, "start", str(e.explanation or e)) from e
        except (DockerException, requests.RequestException) as e:
            raise ContainerOpFailure(name, "start", str(e)) from e

    def remove(self, name: str) -> bool:
        """Force-remove a container. Returns False if it did not exist."""
        try:
            self.client.containers.get(name).remove(force=True)
            return True
        except NotFound:
            return False

    def network_exists(self, name: str) -> bool:
        try:
            self.client.networks.get(name)
            return True
        except NotFound:
            return False

    def create_network(self, name: str, driver: str = "bridge") -> None:
        self.client.networks.create(name, driver=driver)

    def prune_containers(self) -> int:
        """Remove stopped containers, returns number removed."""
        result = self.client.containers.prune() or {}
        return len(result.get("ContainersDeleted") or [])

    def pull_image(self, image: str) -> None:
        self.client.images.pull(image)

    def run_container(
        self,
        image: str,
        name: str,
        network: Optional[str] = None,
        volumes: Optional[Dict[str, Dict[str, str]]] = None,
        ports: Optional[Dict[str, int]] = None,
        labels: Optional[Dict[str, str]] = None,
        restart_policy: str = "always",
    ) -> str:
        """Start a detached container, returns its id."""
        container = self.client.containers.run(
            image,
            name=name,
            detach=True,
            network=network,
            volumes=volumes or {},
            ports=ports or {},
            labels=labels or {},
            restart_policy={"Name": restart_policy},
        )
        return container.id


class ContainerLifecycleGuard:
    """
    Stops and restarts containers for a consistent capture.

    Args:
        runtime: Container runtime adapter
        stop_timeout: Grace period per container before the runtime kills it
    """

    def __init__(self, runtime: DockerRuntime, stop_timeout: int = CONTAINER_STOP_TIMEOUT):
        self.runtime = runtime
        self.stop_timeout = stop_timeout

    def snapshot(self) -> List[str]:
        names = self.runtime.running_containers()
        logger.info(f"Running containers: {len(names)}", extra={"containers": ",".join(names)})
        return names

    def quiesce(self, names: List[str], timeout: Optional[int] = None) -> List[str]:
        """
        Stop each container individually.

        Returns:
            Names that failed to stop (logged, never raised)
        """
        timeout = self.stop_timeout if timeout is None else timeout
        failures = []
        for name in names:
            try:
                self.runtime.stop(name, timeout=timeout)
                logger.info(f"Stopped container: {name}", extra={"container": name})
            except (ContainerOpFailure, DockerException, requests.RequestException) as e:
                failures.append(name)
                error = e if isinstance(e, ContainerOpFailure) else ContainerOpFailure(name, "stop", str(e))
                logger.error(str(error), extra={"container": name})
        return failures

    def resume(self, names: List[str],
               on_started: Optional[Callable[[str], None]] = None) -> List[str]:
        """
        Start each container by name.

        ``on_started`` is called with every name that came back up.

        Returns:
            Names that failed to start (logged, never raised)
        """
        failures = []
        for name in names:
            try:
                self.runtime.start(name)
                logger.info(f"Started container: {name}", extra={"container": name})
            except (ContainerOpFailure, DockerException, requests.RequestException) as e:
                failures.append(name)
                error = e if isinstance(e, ContainerOpFailure) else ContainerOpFailure(name, "start", str(e))
                logger.error(str(error), extra={"container": name})
                continue
            if on_started is not None:
                on_started(name)
        if failures:
            logger.warning(
                f"{len(failures)} container(s) could not be restarted: {', '.join(failures)}"
            )
        return failures

    @contextmanager
    def quiesced(self, names: List[str],
                 resume: Optional[List[str]] = None) -> Iterator["GuardWindow"]:
        """
        Guarded window: stop ``names`` on entry, start them again on exit.

        Args:
            names: Snapshot of running containers
            resume: Containers to start on exit (default: ``names``)

        A ServiceContinuityHandler is registered for the window so a signal
        still restarts the containers before the process exits.
        """
        resume_names = list(names) if resume is None else list(resume)
        window = GuardWindow(names=resume_names)
        handler = ServiceContinuityHandler(self.runtime.start)
        for name in resume_names:
            handler.register_container(name)

        safe_exit = SafeExitManager.get_instance()
        safe_exit.register_handler(handler)
        try:
            window.stop_failures = self.quiesce(names)
            yield window
        finally:
            # Handler bleibt bis zum letzten Start registriert
            try:
                if handler.fired:
                    window.resume_failures = list(handler.failures)
                else:
                    window.resume_failures = self.resume(
                        resume_names, on_started=handler.unregister_container)
            finally:
                safe_exit.unregister_handler(handler)


class GuardWindow:
    """Outcome of one quiesce/resume cycle."""

    def __init__(self, names: List[str]):
        self.names = names
        self.stop_failures: List[str] = []
        self.resume_failures: List[str] = []
