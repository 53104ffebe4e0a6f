"""
Command Executor
================
Runs a unit's command inside an already-running container.

BOUNDARY RULES:
    - Executor ONLY observes execution.
    - Executor NEVER launches or removes containers (ContainerManager does).
    - Executor NEVER interprets test output; exit 0 is success, anything
      else is failure.

stdout and stderr are captured on separate streams (exec with demux), and
duration is measured with the monotonic clock.
"""
import logging
import shlex
import time
from typing import Optional

import docker
from docker import errors as docker_errors

from testfleet.core.constants import EXEC_PATH_PREFIX
from testfleet.core.errors import ContainerNotRunning, RuntimeUnavailable
from testfleet.models.execution_outcome import ExecutionOutcome, OutcomeStatus
from testfleet.utils.log_excerpt import create_log_excerpt

logger = logging.getLogger(__name__)


def build_exec_command(command: str) -> list[str]:
    """Wrap a unit command in ``sh -c`` with common toolchain locations on PATH."""
    return ["sh", "-c", f"export PATH=\"$PATH:{EXEC_PATH_PREFIX}\" && {command}"]


def _decode(stream: Optional[bytes]) -> str:
    if not stream:
        return ""
    return stream.decode("utf-8", errors="replace")


class CommandExecutor:
    """Executes commands in running containers via docker exec."""

    def __init__(self, client=None) -> None:
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker_errors.DockerException as e:
                raise RuntimeUnavailable(f"Cannot connect to Docker: {e}") from e
        return self._client

    def run(self, container_id: str, command: str, unit_id: str = "") -> ExecutionOutcome:
        """
        Execute ``command`` in the container and capture its outcome.

        Parameters
        ----------
        container_id : str
            Container that must currently be running.
        command : str
            Shell command string.
        unit_id : str
            Owning unit, copied into the outcome.

        Returns
        -------
        ExecutionOutcome
            ``success`` on exit 0, ``failure`` otherwise.

        Raises
        ------
        ContainerNotRunning
            If the container is missing or not in the running state.
        """
        try:
            container = self.client.containers.get(container_id)
            container.reload()
        except docker_errors.NotFound as e:
            raise ContainerNotRunning(container_id, "not_found") from e

        if container.status != "running":
            raise ContainerNotRunning(container_id, container.status)

        logger.info("Executing in %s | unit=%s | cmd=%s", container_id, unit_id, shlex.quote(command))
        start_time = time.monotonic()
        try:
            exit_code, streams = container.exec_run(build_exec_command(command), demux=True)
        except docker_errors.NotFound as e:
            raise ContainerNotRunning(container_id, "not_found") from e
        except docker_errors.APIError as e:
            # container stopped between the status check and the exec
            logger.warning("Exec rejected for %s: %s", container_id, e)
            raise ContainerNotRunning(container_id, "exited") from e
        duration = time.monotonic() - start_time

        stdout_bytes, stderr_bytes = streams if streams else (None, None)
        exit_code = -1 if exit_code is None else exit_code
        outcome = ExecutionOutcome(
            unit_id=unit_id,
            exit_code=exit_code,
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
            duration_seconds=round(duration, 3),
            status=OutcomeStatus.SUCCESS if exit_code == 0 else OutcomeStatus.FAILURE,
            container_id=container_id,
        )

        logger.info(
            "Execution complete | unit=%s | exit=%d | time=%.2fs",
            unit_id, outcome.exit_code, outcome.duration_seconds,
        )
        if outcome.status == OutcomeStatus.FAILURE and outcome.stderr:
            logger.debug("stderr for %s:\n%s", unit_id, create_log_excerpt(outcome.stderr, head=10, tail=20))
        return outcome
