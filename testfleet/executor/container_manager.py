"""
Container Manager
=================
Launches, tracks and tears down the containers that execution units run in.

Build and test phases share one contract, parameterised by image and mounts:
    - Build containers get the project source mounted read-only at /workspace
      and a fresh artifact directory (under the scratch root) mounted
      read-write at /tmp/build-artifacts.
    - Test containers use a pre-built, self-contained image with no mounts.

DOCKER STRATEGY:
    - Containers start detached with a keep-alive command; the unit's payload
      is run afterwards through CommandExecutor (docker exec).
    - Every container carries the run label, so a sweep at exit can find
      leftovers even if tracking was lost.
    - Memory limits set both mem_limit and memswap_limit (no swap).

OWNERSHIP:
    The manager is the only component that creates or removes containers.
    Other components hold container ids, never container objects.

CLEANUP:
    cleanup() is idempotent: an already-removed container counts as success.
    Cleanup failures are logged and reported, never raised.
"""
import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

import docker
import requests
from docker import errors as docker_errors
from docker.types import Mount

from testfleet.core.constants import (
    ARTIFACT_MOUNT_TARGET,
    KEEPALIVE_COMMAND,
    RUN_LABEL,
    SOURCE_MOUNT_TARGET,
    UNIT_LABEL,
)
from testfleet.core.errors import (
    CleanupFailure,
    ImageNotFound,
    LaunchFailure,
    RuntimeUnavailable,
)
from testfleet.models.execution_unit import ExecutionUnit
from testfleet.models.managed_container import ContainerStatus, ManagedContainer, MountSpec
from testfleet.models.run_summary import CleanupReport

logger = logging.getLogger(__name__)

# Docker state -> tracked status
_STATUS_MAP = {
    "created": ContainerStatus.LAUNCHING,
    "restarting": ContainerStatus.LAUNCHING,
    "running": ContainerStatus.RUNNING,
    "paused": ContainerStatus.RUNNING,
    "exited": ContainerStatus.EXITED,
    "dead": ContainerStatus.EXITED,
    "removing": ContainerStatus.REMOVED,
}

_DEFAULT_STOP_TIMEOUT = 10

# Raised by the SDK when the daemon rejects a call or the connection drops
_RUNTIME_ERRORS = (docker_errors.DockerException, requests.exceptions.RequestException)


class ContainerManager:
    """
    Owns every container launched during one invocation.

    Parameters
    ----------
    run_id : str
        Identifier stamped on every container via the run label.
    name_prefix : str
        Prefix for generated container names.
    client : docker.DockerClient | None
        Injected client. None connects lazily with ``docker.from_env()``.
    """

    def __init__(self, run_id: str, name_prefix: str = "testfleet",
                 client=None, stop_timeout: float = _DEFAULT_STOP_TIMEOUT) -> None:
        self.run_id = run_id
        self.name_prefix = name_prefix
        self.stop_timeout = stop_timeout
        self._client = client
        self._containers: dict[str, ManagedContainer] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Runtime connection
    # ------------------------------------------------------------------
    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker_errors.DockerException as e:
                raise RuntimeUnavailable(f"Cannot connect to Docker: {e}") from e
        return self._client

    def ping(self) -> None:
        """Raise RuntimeUnavailable if the Docker daemon cannot be reached."""
        try:
            self.client.ping()
        except docker_errors.DockerException as e:
            raise RuntimeUnavailable(f"Docker daemon unreachable: {e}") from e

    # ------------------------------------------------------------------
    # Tracking set
    # ------------------------------------------------------------------
    def register(self, container: ManagedContainer) -> None:
        with self._lock:
            self._containers[container.container_id] = container

    def unregister(self, container_id: str) -> Optional[ManagedContainer]:
        with self._lock:
            return self._containers.pop(container_id, None)

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._containers)

    def get(self, container_id: str) -> Optional[ManagedContainer]:
        with self._lock:
            return self._containers.get(container_id)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------
    def _generate_name(self, unit_id: str) -> str:
        stem = unit_id or "unit"
        return f"{self.name_prefix}-{stem}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    def launch(
        self,
        image: str,
        mounts: Iterable[MountSpec] = (),
        workdir: Optional[str] = None,
        cpu_limit: Optional[float] = None,
        mem_limit: Optional[int] = None,
        name: Optional[str] = None,
        unit_id: str = "",
        artifact_dir: Optional[str] = None,
    ) -> ManagedContainer:
        """
        Start a detached, labelled container kept alive for later exec calls.

        Parameters
        ----------
        image : str
            Image reference; must already exist locally.
        mounts : Iterable[MountSpec]
            Bind mounts to apply.
        workdir : str | None
            Container working directory.
        cpu_limit : float | None
            CPU cores granted to the container (None = unrestricted).
        mem_limit : int | None
            Memory limit in bytes; swap is disabled by matching memswap_limit.
        name : str | None
            Container name. Generated from the prefix and unit id when None.
        unit_id : str
            Owning execution unit.

        Returns
        -------
        ManagedContainer
            Registered in the tracking set with status ``running``.

        Raises
        ------
        ImageNotFound
            If the image is not present on the host.
        LaunchFailure
            If the runtime rejects the container configuration.
        """
        mounts = list(mounts)
        name = name or self._generate_name(unit_id)

        try:
            self.client.images.get(image)
        except docker_errors.ImageNotFound as e:
            raise ImageNotFound(image) from e
        except docker_errors.APIError as e:
            raise LaunchFailure(f"Could not inspect image '{image}': {e}") from e

        run_kwargs = {
            "image": image,
            "command": KEEPALIVE_COMMAND,
            "name": name,
            "detach": True,
            "labels": {RUN_LABEL: self.run_id, UNIT_LABEL: unit_id},
            "mounts": [
                Mount(target=m.target, source=m.source, type="bind", read_only=m.read_only)
                for m in mounts
            ],
        }
        if workdir:
            run_kwargs["working_dir"] = workdir
        if cpu_limit:
            run_kwargs["nano_cpus"] = int(cpu_limit * 1_000_000_000)
        if mem_limit:
            run_kwargs["mem_limit"] = mem_limit
            run_kwargs["memswap_limit"] = mem_limit

        logger.info(
            "Launching container | unit=%s | image=%s | name=%s | cpus=%s | mem=%s",
            unit_id, image, name, cpu_limit, mem_limit,
        )
        try:
            container = self.client.containers.run(**run_kwargs)
        except docker_errors.ImageNotFound as e:
            raise ImageNotFound(image) from e
        except docker_errors.APIError as e:
            raise LaunchFailure(f"Docker rejected container for '{unit_id or image}': {e}") from e

        managed = ManagedContainer(
            container_id=container.short_id,
            name=name,
            unit_id=unit_id,
            image=image,
            mounts=mounts,
            status=ContainerStatus.RUNNING,
            artifact_dir=artifact_dir,
            launched_at=time.monotonic(),
        )
        self.register(managed)
        logger.info("Container %s launched for unit %s", managed.container_id, unit_id)
        return managed

    def launch_build(self, unit: ExecutionUnit, artifact_root: str,
                     mem_limit: Optional[int] = None) -> ManagedContainer:
        """Launch a build container: source read-only, fresh artifact dir read-write."""
        source = os.path.realpath(unit.project_root or "")
        if not os.path.isdir(source):
            raise LaunchFailure(f"Project root does not exist: {unit.project_root}")

        os.makedirs(artifact_root, exist_ok=True)
        artifact_dir = os.path.join(artifact_root, f"{unit.unit_id}-{uuid.uuid4().hex[:8]}")
        os.makedirs(artifact_dir)

        mounts = [
            MountSpec(source=source, target=SOURCE_MOUNT_TARGET, read_only=True),
            MountSpec(source=artifact_dir, target=ARTIFACT_MOUNT_TARGET, read_only=False),
        ]
        return self.launch(
            image=unit.image,
            mounts=mounts,
            workdir=unit.working_directory,
            cpu_limit=unit.cpu_slots,
            mem_limit=mem_limit,
            unit_id=unit.unit_id,
            artifact_dir=artifact_dir,
        )

    def launch_test(self, unit: ExecutionUnit, mem_limit: Optional[int] = None) -> ManagedContainer:
        """Launch a test container from a self-contained image, no mounts."""
        return self.launch(
            image=unit.image,
            workdir=unit.working_directory,
            cpu_limit=unit.cpu_slots,
            mem_limit=mem_limit,
            unit_id=unit.unit_id,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def track(self, container_id: str) -> ContainerStatus:
        """Poll the runtime for the container's current status."""
        try:
            container = self.client.containers.get(container_id)
            container.reload()
        except docker_errors.NotFound:
            managed = self.get(container_id)
            if managed is not None:
                managed.status = ContainerStatus.NOT_FOUND
            return ContainerStatus.NOT_FOUND

        status = _STATUS_MAP.get(container.status, ContainerStatus.EXITED)
        managed = self.get(container_id)
        if managed is not None:
            managed.status = status
        return status

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _remove(self, container_id: str) -> None:
        """Stop (if running) and remove one container. Raises CleanupFailure."""
        try:
            container = self.client.containers.get(container_id)
        except docker_errors.NotFound:
            return
        except _RUNTIME_ERRORS as e:
            raise CleanupFailure(f"Could not look up container {container_id}: {e}") from e

        try:
            if container.status == "running":
                container.stop(timeout=self.stop_timeout)
            container.remove(force=True)
        except docker_errors.NotFound:
            return
        except _RUNTIME_ERRORS as e:
            raise CleanupFailure(f"Could not remove container {container_id}: {e}") from e

    def cleanup(self, container_id: str) -> bool:
        """
        Stop and remove a container. Safe to call repeatedly.

        Returns True when the container is gone (including when it already
        was), False when removal failed.
        """
        try:
            self._remove(container_id)
        except CleanupFailure as e:
            logger.warning("%s", e)
            return False

        managed = self.unregister(container_id)
        if managed is not None:
            managed.status = ContainerStatus.REMOVED
            logger.info("Container %s destroyed", container_id)
        return True

    def cleanup_all(self, container_ids: Optional[Iterable[str]] = None) -> CleanupReport:
        """Clean up every id (default: all tracked); never stops at the first failure."""
        ids = list(container_ids) if container_ids is not None else self.active_ids()
        report = CleanupReport(total=len(ids))
        for container_id in ids:
            if self.cleanup(container_id):
                report.succeeded += 1
            else:
                report.failed += 1
                report.failed_ids.append(container_id)
        if ids:
            logger.info(
                "Cleanup complete | total=%d | succeeded=%d | failed=%d",
                report.total, report.succeeded, report.failed,
            )
        return report

    def cleanup_completed(self) -> int:
        """Remove tracked containers that have already exited or vanished."""
        removed = 0
        for container_id in self.active_ids():
            if self.track(container_id) in (ContainerStatus.EXITED, ContainerStatus.NOT_FOUND):
                if self.cleanup(container_id):
                    removed += 1
        return removed

    def sweep_run_containers(self) -> CleanupReport:
        """Force-remove every container labelled with this run, tracked or not."""
        report = CleanupReport()
        try:
            leftovers = self.client.containers.list(
                all=True, filters={"label": f"{RUN_LABEL}={self.run_id}"}
            )
        except _RUNTIME_ERRORS as e:
            logger.warning("Could not list run containers for sweep: %s", e)
            return report

        report.total = len(leftovers)
        for container in leftovers:
            try:
                container.remove(force=True)
                report.succeeded += 1
            except docker_errors.NotFound:
                report.succeeded += 1
            except _RUNTIME_ERRORS as e:
                logger.warning("Failed to sweep container %s: %s", container.short_id, e)
                report.failed += 1
                report.failed_ids.append(container.short_id)
            self.unregister(container.short_id)

        if report.total:
            logger.info("Swept %d leftover container(s) for run %s", report.total, self.run_id)
        return report

    # ------------------------------------------------------------------
    # Bulk signalling (used by the shutdown coordinator)
    # ------------------------------------------------------------------
    def _signal_all(self, container_ids: list[str], action) -> int:
        if not container_ids:
            return 0
        with ThreadPoolExecutor(max_workers=min(8, len(container_ids))) as pool:
            return sum(pool.map(action, container_ids))

    def stop_all(self, container_ids: Optional[Iterable[str]] = None,
                 timeout: Optional[float] = None) -> int:
        """Ask every container to stop, concurrently, with a grace period."""
        ids = list(container_ids) if container_ids is not None else self.active_ids()
        grace = self.stop_timeout if timeout is None else timeout

        def stop(container_id: str) -> int:
            try:
                self.client.containers.get(container_id).stop(timeout=grace)
            except docker_errors.NotFound:
                return 0
            except _RUNTIME_ERRORS as e:
                logger.warning("Failed to stop container %s: %s", container_id, e)
                return 0
            return 1

        stopped = self._signal_all(ids, stop)
        logger.info("Stopped %d/%d container(s) (grace=%ss)", stopped, len(ids), grace)
        return stopped

    def kill_all(self, container_ids: Optional[Iterable[str]] = None) -> int:
        """Kill every container immediately."""
        ids = list(container_ids) if container_ids is not None else self.active_ids()

        def kill(container_id: str) -> int:
            try:
                self.client.containers.get(container_id).kill()
            except docker_errors.NotFound:
                return 0
            except _RUNTIME_ERRORS as e:
                # 409 when the container already stopped
                logger.debug("Kill skipped for %s: %s", container_id, e)
                return 0
            return 1

        killed = self._signal_all(ids, kill)
        logger.info("Killed %d/%d container(s)", killed, len(ids))
        return killed
