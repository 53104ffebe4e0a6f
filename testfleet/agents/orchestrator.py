"""
Orchestrator
============
Wires one invocation together: run directory → runtime check → memory budget
→ resource pool → scheduler, all wrapped by the shutdown coordinator.

Invocation flow:
    1. Create the run directory under the scratch root.
    2. Arm the shutdown coordinator (signals + atexit).
    3. Validate units, ping Docker, compute the memory budget, create the pool.
    4. Run the scheduler while a background loop feeds newly published
       results to the progress callback.
    5. On every exit path: disarm, then run the exit cleanup exactly once.

Fatal errors (ConfigurationError, RuntimeUnavailable) propagate to the caller
after cleanup; every per-unit problem is already inside the RunSummary.
"""
import asyncio
import logging
import os
import uuid
from typing import Callable, Optional

from testfleet.agents.scheduler import ParallelScheduler
from testfleet.agents.shutdown import CancellationToken, ShutdownCoordinator
from testfleet.core.config import ResourceSettings, load_settings
from testfleet.core.constants import (
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    EXIT_UNITS_FAILED,
    POOL_STATE_FILENAME,
    RUN_DIR_PREFIX,
)
from testfleet.executor.command_executor import CommandExecutor
from testfleet.executor.container_manager import ContainerManager
from testfleet.models.execution_outcome import PolledResult
from testfleet.models.execution_unit import ExecutionUnit
from testfleet.models.run_summary import RunSummary, ShutdownReport
from testfleet.resources.host_probe import detect_cpu_count
from testfleet.resources.memory import compute_memory_budget
from testfleet.resources.resource_pool import ResourcePool
from testfleet.services.result_channel import ResultPoller, ResultPublisher
from testfleet.services.unit_loader import validate_units

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PolledResult], None]


def exit_code_for(summary: RunSummary) -> int:
    """Map a finished run to the process exit status."""
    if summary.status == "interrupted":
        return EXIT_INTERRUPTED
    if summary.status == "success":
        return EXIT_SUCCESS
    return EXIT_UNITS_FAILED


class Orchestrator:
    """
    Parameters
    ----------
    settings : ResourceSettings | None
        Validated configuration. Loaded from the environment when None.
    progress_callback : callable | None
        Called with each PolledResult as soon as it is published.
    client : docker.DockerClient | None
        Injected Docker client shared by the manager and executor.
    """

    def __init__(self, settings: Optional[ResourceSettings] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 client=None) -> None:
        self.settings = settings or load_settings()
        self.progress_callback = progress_callback
        self.client = client
        self.token = CancellationToken()
        self.run_dir: Optional[str] = None
        self.shutdown_report: Optional[ShutdownReport] = None

    def _create_run_dir(self) -> str:
        root = self.settings.scratch_root
        os.makedirs(root, exist_ok=True)
        run_dir = os.path.join(root, f"{RUN_DIR_PREFIX}-{os.getpid()}-{uuid.uuid4().hex[:8]}")
        os.makedirs(run_dir)
        return run_dir

    def _build_pool(self, run_dir: str) -> ResourcePool:
        cpu_limit = self.settings.max_parallel or detect_cpu_count()
        budget = compute_memory_budget(
            cpu_limit,
            headroom_percent=self.settings.memory_headroom_percent,
            total_bytes=self.settings.total_memory_bytes,
            per_unit_bytes=self.settings.memory_per_unit_bytes,
        )
        return ResourcePool.create(
            os.path.join(run_dir, POOL_STATE_FILENAME), capacity=cpu_limit, memory=budget
        )

    # ------------------------------------------------------------------
    # Progress feed
    # ------------------------------------------------------------------
    def _deliver(self, results: list[PolledResult]) -> None:
        for result in results:
            try:
                self.progress_callback(result)
            except Exception:
                logger.warning("Progress callback failed for %s", result.unit_id, exc_info=True)

    async def _watch_results(self, poller: ResultPoller, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self._deliver(await asyncio.to_thread(poller.poll))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        self._deliver(await asyncio.to_thread(poller.poll))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def run(self, units: list[ExecutionUnit]) -> RunSummary:
        self.run_dir = self._create_run_dir()
        run_id = os.path.basename(self.run_dir)
        logger.info("Run %s started | units=%d | scratch=%s", run_id, len(units), self.run_dir)

        containers = ContainerManager(
            run_id,
            name_prefix=self.settings.container_prefix,
            client=self.client,
            stop_timeout=self.settings.grace_period_seconds,
        )
        executor = CommandExecutor(client=self.client)
        publisher = ResultPublisher(self.run_dir)
        coordinator = ShutdownCoordinator(
            containers,
            publisher=publisher,
            run_dir=self.run_dir,
            grace_period=self.settings.grace_period_seconds,
            token=self.token,
        )
        coordinator.arm()

        try:
            validate_units(units)
            await asyncio.to_thread(containers.ping)

            pool = self._build_pool(self.run_dir)
            coordinator.attach_pool(pool)

            scheduler = ParallelScheduler(
                pool,
                containers,
                executor,
                publisher,
                artifact_root=os.path.join(self.run_dir, "artifacts"),
                token=self.token,
                poll_interval=self.settings.poll_interval_seconds,
                memory_wait_timeout=self.settings.memory_wait_timeout_seconds,
                force_admit=self.settings.force_admit,
            )

            stop = asyncio.Event()
            watcher = None
            if self.progress_callback is not None:
                watcher = asyncio.create_task(self._watch_results(ResultPoller(self.run_dir), stop))
            try:
                return await scheduler.run(units)
            finally:
                stop.set()
                if watcher is not None:
                    await watcher
        finally:
            coordinator.disarm()
            self.shutdown_report = await asyncio.to_thread(coordinator.cleanup)
            logger.info("Run %s finished", run_id)
