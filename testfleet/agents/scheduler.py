"""
Parallel Scheduler
==================
Runs execution units in capacity-bounded batches.

Lifecycle of one run(units):
    1. Validate the unit graph (duplicates, unknown/self dependencies, cycles,
       oversized CPU requests). Nothing is launched if validation fails.
    2. Form the next batch in input order, up to the pool's effective ceiling.
       A unit is admitted only once it holds its CPU slots AND its memory.
    3. Run every admitted unit as its own task:
           launch → execute → publish → cleanup
       then wait for the whole batch before forming the next one.
    4. Assemble the RunSummary in input order.

ADMISSION RULES:
    - Dependency not finished yet      → deferred to a later batch.
    - Dependency finished unsuccessful → ``skipped``, never launched.
    - Resources short, batch non-empty → deferred (batch closes).
    - Resources short, batch empty     → poll every poll_interval until
      memory_wait_timeout, then force-admit (memory only) or report
      ``resource_exhausted``.

FAILURE ISOLATION:
    Any exception inside a unit task becomes that unit's ``failure`` outcome.
    Pool reservations are released in the task's finally block.

CANCELLATION:
    The CancellationToken is checked before each batch, before and after each
    launch, and after each command. Units that did not complete because of an
    interrupt are reported ``cancelled``.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Union

from testfleet.agents.shutdown import CancellationToken
from testfleet.core.errors import ContainerNotRunning, LaunchFailure, ResourceExhausted
from testfleet.executor.command_executor import CommandExecutor
from testfleet.executor.container_manager import ContainerManager
from testfleet.models.execution_outcome import ExecutionOutcome, OutcomeStatus
from testfleet.models.execution_unit import ExecutionUnit
from testfleet.models.run_summary import RunSummary
from testfleet.resources.resource_pool import ResourcePool
from testfleet.services.result_channel import ResultPublisher
from testfleet.services.unit_loader import validate_units

logger = logging.getLogger(__name__)


@dataclass
class _Grant:
    """Resources held by one admitted unit."""
    slots: int
    memory_bytes: int = 0
    mem_limit: Optional[int] = None


def _terminal(unit: ExecutionUnit, status: OutcomeStatus, error: str) -> ExecutionOutcome:
    return ExecutionOutcome(unit_id=unit.unit_id, status=status, error=error)


class ParallelScheduler:
    """
    Parameters
    ----------
    pool : ResourcePool
        Shared CPU / memory accounting.
    containers : ContainerManager
        Launches and removes unit containers.
    executor : CommandExecutor
        Runs unit commands.
    publisher : ResultPublisher
        Persists each outcome.
    artifact_root : str
        Parent directory for build artifact mounts (inside the run dir).
    token : CancellationToken | None
        Shared with the shutdown coordinator.
    poll_interval : float
        Seconds between resource polls while a unit waits.
    memory_wait_timeout : float
        Seconds a unit may wait for resources before the fallback applies.
    force_admit : bool
        After the wait, admit with whatever memory is left (True) or report
        ``resource_exhausted`` (False).
    """

    def __init__(self, pool: ResourcePool, containers: ContainerManager,
                 executor: CommandExecutor, publisher: ResultPublisher,
                 artifact_root: str,
                 token: Optional[CancellationToken] = None,
                 poll_interval: float = 0.5,
                 memory_wait_timeout: float = 30.0,
                 force_admit: bool = True) -> None:
        self.pool = pool
        self.containers = containers
        self.executor = executor
        self.publisher = publisher
        self.artifact_root = artifact_root
        self.token = token or CancellationToken()
        self.poll_interval = poll_interval
        self.memory_wait_timeout = memory_wait_timeout
        self.force_admit = force_admit

        self._running = 0
        self._peak_running = 0
        self._launched = 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def run(self, units: list[ExecutionUnit]) -> RunSummary:
        units = list(units)
        validate_units(units, capacity=self.pool.status().capacity)

        self._running = 0
        self._peak_running = 0
        self._launched = 0

        outcomes: dict[str, ExecutionOutcome] = {}
        batches: list[list[str]] = []
        pending = units

        logger.info("Scheduling %d unit(s) | ceiling=%d", len(units), self.pool.effective_ceiling)

        while pending:
            if self.token.cancelled:
                for unit in pending:
                    outcomes[unit.unit_id] = _terminal(
                        unit, OutcomeStatus.CANCELLED, "Run interrupted before the unit started"
                    )
                    await self._publish(unit, outcomes[unit.unit_id])
                break

            batch, pending = await self._form_batch(pending, outcomes)
            if not batch:
                continue

            batch_ids = [unit.unit_id for unit, _ in batch]
            batches.append(batch_ids)
            logger.info("Batch %d: %s", len(batches), ", ".join(batch_ids))

            results = await asyncio.gather(
                *(self._run_unit(unit, grant) for unit, grant in batch),
                return_exceptions=True,
            )

            for (unit, _), result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("Unit %s task failed: %s", unit.unit_id, result, exc_info=result)
                    result = _terminal(unit, OutcomeStatus.FAILURE, f"Unexpected scheduler error: {result}")
                    await self._publish(unit, result)
                outcomes[unit.unit_id] = result

            succeeded = sum(1 for unit, _ in batch if outcomes[unit.unit_id].succeeded)
            logger.info("Batch %d complete: %d/%d succeeded", len(batches), succeeded, len(batch))

        summary = RunSummary.from_outcomes(
            [outcomes[unit.unit_id] for unit in units],
            batches=batches,
            launched=self._launched,
            peak_running=self._peak_running,
            interrupted=self.token.cancelled,
        )
        logger.info(
            "Run %s | total=%d | succeeded=%d | failed=%d | skipped=%d | cancelled=%d",
            summary.status, summary.total, summary.succeeded, summary.failed,
            summary.skipped, summary.cancelled,
        )
        return summary

    # ------------------------------------------------------------------
    # Batch formation
    # ------------------------------------------------------------------
    async def _form_batch(self, pending: list[ExecutionUnit],
                          outcomes: dict[str, ExecutionOutcome]):
        ceiling = self.pool.effective_ceiling
        batch: list[tuple[ExecutionUnit, _Grant]] = []
        deferred: list[ExecutionUnit] = []
        closed = False

        for unit in pending:
            if closed or len(batch) >= ceiling:
                deferred.append(unit)
                continue

            if unit.depends_on is not None:
                dependency = outcomes.get(unit.depends_on)
                if dependency is None:
                    deferred.append(unit)
                    continue
                if not dependency.succeeded:
                    logger.info(
                        "Skipping %s: dependency %s finished with %s",
                        unit.unit_id, unit.depends_on, dependency.status.value,
                    )
                    outcomes[unit.unit_id] = _terminal(
                        unit, OutcomeStatus.SKIPPED,
                        f"Dependency '{unit.depends_on}' did not succeed ({dependency.status.value})",
                    )
                    await self._publish(unit, outcomes[unit.unit_id])
                    continue

            try:
                grant = await self._admit(unit, batch_empty=not batch)
            except ResourceExhausted as e:
                logger.warning("Unit %s: %s", unit.unit_id, e)
                grant = _terminal(unit, OutcomeStatus.RESOURCE_EXHAUSTED, str(e))

            if grant is None:
                deferred.append(unit)
                closed = True
            elif isinstance(grant, ExecutionOutcome):
                outcomes[unit.unit_id] = grant
                await self._publish(unit, grant)
            else:
                batch.append((unit, grant))

        return batch, deferred

    def _memory_request(self, unit: ExecutionUnit) -> int:
        return unit.memory_bytes or self.pool.per_unit_bytes

    async def _admit(self, unit: ExecutionUnit,
                     batch_empty: bool) -> Union[_Grant, ExecutionOutcome, None]:
        """
        Reserve CPU slots and memory for ``unit``.

        Returns a _Grant on success, None when the unit should wait for a later
        batch, or a ``cancelled`` outcome. Raises ResourceExhausted once the
        wait times out and force-admission does not apply.
        """
        memory_request = self._memory_request(unit)
        deadline = time.monotonic() + self.memory_wait_timeout
        short_of = "cpu"

        while True:
            cpu = await asyncio.to_thread(self.pool.acquire, unit.cpu_slots)
            if cpu.acquired:
                if not memory_request:
                    return _Grant(slots=unit.cpu_slots)
                memory = await asyncio.to_thread(self.pool.acquire_memory, memory_request)
                if memory.acquired:
                    return _Grant(slots=unit.cpu_slots, memory_bytes=memory_request, mem_limit=memory_request)
                await asyncio.to_thread(self.pool.release, unit.cpu_slots)
                short_of = "memory"
            else:
                short_of = "cpu"

            if not batch_empty:
                return None
            if self.token.cancelled:
                return _terminal(unit, OutcomeStatus.CANCELLED, "Run interrupted while waiting for resources")
            if time.monotonic() >= deadline:
                break
            logger.debug("Unit %s waiting for %s", unit.unit_id, short_of)
            await asyncio.sleep(self.poll_interval)

        if short_of == "memory" and self.force_admit:
            cpu = await asyncio.to_thread(self.pool.acquire, unit.cpu_slots)
            if cpu.acquired:
                granted = await asyncio.to_thread(self.pool.force_acquire_memory, memory_request)
                logger.warning("Force-admitting %s after waiting %.1fs for memory",
                               unit.unit_id, self.memory_wait_timeout)
                return _Grant(slots=unit.cpu_slots, memory_bytes=granted, mem_limit=memory_request)

        raise ResourceExhausted(
            f"Could not acquire {short_of} within {self.memory_wait_timeout:.1f}s"
        )

    async def _release(self, grant: _Grant) -> None:
        try:
            await asyncio.to_thread(self.pool.release, grant.slots)
            if grant.memory_bytes:
                await asyncio.to_thread(self.pool.release_memory, grant.memory_bytes)
        except OSError as e:
            logger.warning("Failed to release pool reservation: %s", e)

    # ------------------------------------------------------------------
    # Unit task
    # ------------------------------------------------------------------
    async def _run_unit(self, unit: ExecutionUnit, grant: _Grant) -> ExecutionOutcome:
        container = None
        try:
            if self.token.cancelled:
                outcome = _terminal(unit, OutcomeStatus.CANCELLED, "Run interrupted before launch")
                await self._publish(unit, outcome)
                return outcome

            try:
                if unit.is_build:
                    container = await asyncio.to_thread(
                        self.containers.launch_build, unit, self.artifact_root, grant.mem_limit
                    )
                else:
                    container = await asyncio.to_thread(self.containers.launch_test, unit, grant.mem_limit)
            except LaunchFailure as e:
                logger.error("Launch failed for %s: %s", unit.unit_id, e)
                outcome = _terminal(unit, OutcomeStatus.FAILURE, str(e))
            else:
                self._launched += 1
                self._running += 1
                self._peak_running = max(self._peak_running, self._running)

                if self.token.cancelled:
                    # launched after the interrupt; the graceful stop never saw this container
                    outcome = ExecutionOutcome(
                        unit_id=unit.unit_id, status=OutcomeStatus.CANCELLED,
                        error="Run interrupted before the command started",
                        container_id=container.container_id,
                        artifact_dir=container.artifact_dir,
                    )
                    await self._publish(unit, outcome)
                    return outcome

                try:
                    outcome = await asyncio.to_thread(
                        self.executor.run, container.container_id, unit.command, unit.unit_id
                    )
                except ContainerNotRunning as e:
                    logger.warning("Unit %s: %s", unit.unit_id, e)
                    outcome = ExecutionOutcome(
                        unit_id=unit.unit_id, status=OutcomeStatus.FAILURE,
                        error=str(e), container_id=container.container_id,
                    )

                updates = {"artifact_dir": container.artifact_dir}
                if self.token.cancelled and not outcome.succeeded:
                    updates["status"] = OutcomeStatus.CANCELLED
                    updates["error"] = outcome.error or "Interrupted while running"
                outcome = outcome.model_copy(update=updates)

            await self._publish(unit, outcome)
            return outcome
        finally:
            try:
                if container is not None:
                    self._running -= 1
                    await asyncio.to_thread(self.containers.cleanup, container.container_id)
            finally:
                await self._release(grant)

    async def _publish(self, unit: ExecutionUnit, outcome: ExecutionOutcome) -> None:
        try:
            await asyncio.to_thread(self.publisher.publish, unit.unit_id, outcome)
        except OSError as e:
            logger.error("Could not publish outcome for %s: %s", unit.unit_id, e)

    @property
    def peak_running(self) -> int:
        return self._peak_running
