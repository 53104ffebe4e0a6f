"""
Unit Tests — Parallel Scheduler
===============================
Batching against pool capacity, dependency gating, memory waits,
failure isolation and cancellation.

Containers and commands are faked; the resource pool and result channel
are real and live in tmp_path.
"""
import asyncio
import threading
import time

import pytest

from testfleet.agents.scheduler import ParallelScheduler
from testfleet.agents.shutdown import CancellationToken
from testfleet.core.constants import GIB
from testfleet.core.errors import ConfigurationError, ImageNotFound, RuntimeUnavailable
from testfleet.models.execution_outcome import ExecutionOutcome, OutcomeStatus
from testfleet.models.execution_unit import ExecutionUnit
from testfleet.models.managed_container import ContainerStatus, ManagedContainer
from testfleet.resources.memory import MemoryBudget
from testfleet.resources.resource_pool import ResourcePool
from testfleet.services.result_channel import ResultPoller, ResultPublisher


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeContainers:
    def __init__(self, missing_images=(), on_launch=None, launch_error=None, cleanup_error=None):
        self.missing_images = set(missing_images)
        self.on_launch = on_launch
        self.launch_error = launch_error
        self.cleanup_error = cleanup_error
        self.launched = []
        self.cleaned = []
        self.mem_limits = {}
        self._lock = threading.Lock()

    def _launch(self, unit, mem_limit, artifact_dir=None):
        if unit.image in self.missing_images:
            raise ImageNotFound(unit.image)
        if self.launch_error is not None:
            raise self.launch_error
        if self.on_launch:
            self.on_launch(unit.unit_id)
        with self._lock:
            self.launched.append(unit.unit_id)
            self.mem_limits[unit.unit_id] = mem_limit
        cid = f"c-{unit.unit_id}"
        return ManagedContainer(container_id=cid, name=cid, unit_id=unit.unit_id, image=unit.image,
                                status=ContainerStatus.RUNNING, artifact_dir=artifact_dir)

    def launch_test(self, unit, mem_limit=None):
        return self._launch(unit, mem_limit)

    def launch_build(self, unit, artifact_root, mem_limit=None):
        return self._launch(unit, mem_limit, artifact_dir=f"{artifact_root}/{unit.unit_id}")

    def cleanup(self, container_id):
        with self._lock:
            self.cleaned.append(container_id)
        if self.cleanup_error is not None:
            raise self.cleanup_error
        return True


class FakeExecutor:
    """Records start/end events and the peak number of concurrent commands."""

    def __init__(self, exit_codes=None, delay=0.05, on_run=None, raises=None):
        self.exit_codes = exit_codes or {}
        self.delay = delay
        self.on_run = on_run
        self.raises = raises or {}
        self.events = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def run(self, container_id, command, unit_id=""):
        with self._lock:
            self.events.append(("start", unit_id))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.on_run:
                self.on_run(unit_id)
            if unit_id in self.raises:
                raise self.raises[unit_id]
            time.sleep(self.delay)
            code = self.exit_codes.get(unit_id, 0)
            return ExecutionOutcome(
                unit_id=unit_id, exit_code=code, stdout=f"ran {unit_id}",
                status=OutcomeStatus.SUCCESS if code == 0 else OutcomeStatus.FAILURE,
                container_id=container_id, duration_seconds=self.delay,
            )
        finally:
            with self._lock:
                self.active -= 1
                self.events.append(("end", unit_id))


def _unit(unit_id, **kwargs):
    return ExecutionUnit(unit_id=unit_id, image=kwargs.pop("image", "tests:latest"),
                         command=kwargs.pop("command", "run-tests"), **kwargs)


def _make(tmp_path, capacity=2, memory=None, executor=None, containers=None, token=None, **kwargs):
    pool = ResourcePool.create(str(tmp_path / "pool.json"), capacity=capacity, memory=memory)
    containers = containers or FakeContainers()
    executor = executor or FakeExecutor()
    scheduler = ParallelScheduler(
        pool, containers, executor, ResultPublisher(str(tmp_path / "records")),
        artifact_root=str(tmp_path / "artifacts"),
        token=token, poll_interval=0.01, **kwargs,
    )
    return scheduler, pool, containers, executor


def _budget(usable_gb, per_unit_gb, cpu_limit):
    return MemoryBudget(
        total_bytes=usable_gb * GIB, headroom_percent=0, usable_bytes=usable_gb * GIB,
        per_unit_bytes=per_unit_gb * GIB, cpu_limit=cpu_limit,
        memory_limit=max(1, usable_gb // per_unit_gb),
    )


# ---------------------------------------------------------------------------
# 1. Batching
# ---------------------------------------------------------------------------
class TestBatching:

    def test_capacity_two_three_units(self, tmp_path):
        scheduler, pool, containers, executor = _make(
            tmp_path, capacity=2, executor=FakeExecutor(exit_codes={"U2": 1})
        )
        units = [_unit("U1"), _unit("U2"), _unit("U3")]

        summary = asyncio.run(scheduler.run(units))

        assert summary.batches == [["U1", "U2"], ["U3"]]
        assert summary.total == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.launched == 3
        assert summary.status == "failure"
        assert [o.unit_id for o in summary.outcomes] == ["U1", "U2", "U3"]

        events = executor.events
        u3_start = events.index(("start", "U3"))
        assert events.index(("end", "U1")) < u3_start
        assert events.index(("end", "U2")) < u3_start

    def test_peak_never_exceeds_ceiling(self, tmp_path):
        scheduler, pool, _, executor = _make(tmp_path, capacity=3)
        units = [_unit(f"u{i}") for i in range(10)]

        summary = asyncio.run(scheduler.run(units))

        assert summary.succeeded == 10
        assert len(summary.batches) >= 4
        assert summary.peak_running <= 3
        assert executor.peak <= 3
        assert pool.status().in_use == 0

    def test_memory_limit_splits_batches(self, tmp_path):
        scheduler, pool, _, executor = _make(
            tmp_path, capacity=4, memory=_budget(usable_gb=2, per_unit_gb=1, cpu_limit=4)
        )
        units = [_unit(f"u{i}") for i in range(4)]

        summary = asyncio.run(scheduler.run(units))

        assert summary.batches == [["u0", "u1"], ["u2", "u3"]]
        assert executor.peak <= 2
        snap = pool.status()
        assert snap.in_use == 0
        assert snap.memory_in_use_bytes == 0

    def test_multi_slot_units_share_capacity(self, tmp_path):
        scheduler, _, _, _ = _make(tmp_path, capacity=3)
        units = [_unit("big", cpu_slots=2), _unit("small"), _unit("other")]

        summary = asyncio.run(scheduler.run(units))

        assert summary.batches == [["big", "small"], ["other"]]

    def test_outcomes_published(self, tmp_path):
        scheduler, _, _, _ = _make(tmp_path, capacity=2)
        asyncio.run(scheduler.run([_unit("a"), _unit("b")]))

        polled = ResultPoller(str(tmp_path / "records")).poll()
        assert sorted(r.unit_id for r in polled) == ["a", "b"]

    def test_every_container_cleaned(self, tmp_path):
        scheduler, _, containers, _ = _make(tmp_path, capacity=2)
        asyncio.run(scheduler.run([_unit("a"), _unit("b"), _unit("c")]))
        assert sorted(containers.cleaned) == ["c-a", "c-b", "c-c"]

    def test_empty_unit_list(self, tmp_path):
        scheduler, _, _, _ = _make(tmp_path)
        summary = asyncio.run(scheduler.run([]))
        assert summary.total == 0
        assert summary.batches == []


# ---------------------------------------------------------------------------
# 2. Dependencies
# ---------------------------------------------------------------------------
class TestDependencies:

    def test_failed_dependency_skips_dependent(self, tmp_path):
        scheduler, _, containers, _ = _make(tmp_path, executor=FakeExecutor(exit_codes={"U3": 1}))
        units = [_unit("U3"), _unit("U4", depends_on="U3")]

        summary = asyncio.run(scheduler.run(units))

        outcomes = {o.unit_id: o for o in summary.outcomes}
        assert outcomes["U3"].status == OutcomeStatus.FAILURE
        assert outcomes["U4"].status == OutcomeStatus.SKIPPED
        assert "U4" not in containers.launched
        assert summary.skipped == 1

    def test_skip_propagates_down_the_chain(self, tmp_path):
        scheduler, _, containers, _ = _make(tmp_path, executor=FakeExecutor(exit_codes={"a": 1}))
        units = [_unit("a"), _unit("b", depends_on="a"), _unit("c", depends_on="b")]

        summary = asyncio.run(scheduler.run(units))

        assert [o.status for o in summary.outcomes] == [
            OutcomeStatus.FAILURE, OutcomeStatus.SKIPPED, OutcomeStatus.SKIPPED,
        ]
        assert containers.launched == ["a"]

    def test_dependent_waits_for_later_batch(self, tmp_path):
        scheduler, _, _, executor = _make(tmp_path, capacity=4)
        units = [_unit("test", depends_on="build"), _unit("build"), _unit("lint")]

        summary = asyncio.run(scheduler.run(units))

        assert summary.batches == [["build", "lint"], ["test"]]
        assert summary.succeeded == 3
        assert executor.events.index(("end", "build")) < executor.events.index(("start", "test"))

    def test_build_unit_gets_artifact_dir(self, tmp_path):
        scheduler, _, _, _ = _make(tmp_path)
        build = ExecutionUnit(unit_id="build", image="rust:1", command="cargo build",
                              phase="build", project_root=str(tmp_path))

        summary = asyncio.run(scheduler.run([build]))

        assert summary.outcomes[0].artifact_dir.endswith("/build")

    def test_invalid_graph_launches_nothing(self, tmp_path):
        scheduler, _, containers, _ = _make(tmp_path)
        with pytest.raises(ConfigurationError):
            asyncio.run(scheduler.run([_unit("a", depends_on="b"), _unit("b", depends_on="a")]))
        assert containers.launched == []

    def test_oversized_unit_rejected(self, tmp_path):
        scheduler, _, containers, _ = _make(tmp_path, capacity=2)
        with pytest.raises(ConfigurationError):
            asyncio.run(scheduler.run([_unit("huge", cpu_slots=3)]))
        assert containers.launched == []


# ---------------------------------------------------------------------------
# 3. Memory waits
# ---------------------------------------------------------------------------
class TestMemoryWait:

    def test_force_admit_after_timeout(self, tmp_path):
        scheduler, pool, containers, _ = _make(
            tmp_path, capacity=2, memory=_budget(usable_gb=2, per_unit_gb=1, cpu_limit=2),
            memory_wait_timeout=0.05, force_admit=True,
        )
        greedy = _unit("greedy", memory_bytes=3 * GIB)

        summary = asyncio.run(scheduler.run([greedy]))

        assert summary.outcomes[0].status == OutcomeStatus.SUCCESS
        assert containers.mem_limits["greedy"] == 3 * GIB
        assert pool.status().memory_in_use_bytes == 0

    def test_resource_exhausted_without_force_admit(self, tmp_path):
        scheduler, pool, containers, _ = _make(
            tmp_path, capacity=2, memory=_budget(usable_gb=2, per_unit_gb=1, cpu_limit=2),
            memory_wait_timeout=0.05, force_admit=False,
        )
        units = [_unit("greedy", memory_bytes=3 * GIB), _unit("fine")]

        summary = asyncio.run(scheduler.run(units))

        outcomes = {o.unit_id: o for o in summary.outcomes}
        assert outcomes["greedy"].status == OutcomeStatus.RESOURCE_EXHAUSTED
        assert outcomes["fine"].status == OutcomeStatus.SUCCESS
        assert "greedy" not in containers.launched
        assert summary.failed == 1
        assert pool.status().in_use == 0

    def test_waiting_unit_admitted_when_memory_frees(self, tmp_path):
        scheduler, pool, _, _ = _make(
            tmp_path, capacity=2, memory=_budget(usable_gb=2, per_unit_gb=1, cpu_limit=2),
            memory_wait_timeout=5, force_admit=False,
        )
        # another worker holds all memory for a moment
        holder = ResourcePool.attach(pool.state_path)
        holder.acquire_memory(2 * GIB)
        threading.Timer(0.1, holder.release_memory, args=(2 * GIB,)).start()

        summary = asyncio.run(scheduler.run([_unit("patient")]))

        assert summary.outcomes[0].status == OutcomeStatus.SUCCESS


# ---------------------------------------------------------------------------
# 4. Failure isolation
# ---------------------------------------------------------------------------
class TestFailureIsolation:

    def test_launch_failure_does_not_abort_siblings(self, tmp_path):
        scheduler, pool, containers, _ = _make(
            tmp_path, containers=FakeContainers(missing_images={"ghost:latest"})
        )
        units = [_unit("missing", image="ghost:latest"), _unit("present")]

        summary = asyncio.run(scheduler.run(units))

        outcomes = {o.unit_id: o for o in summary.outcomes}
        assert outcomes["missing"].status == OutcomeStatus.FAILURE
        assert "not found" in outcomes["missing"].error
        assert outcomes["present"].status == OutcomeStatus.SUCCESS
        assert summary.launched == 1
        assert pool.status().in_use == 0

    def test_unexpected_exception_becomes_failure(self, tmp_path):
        executor = FakeExecutor(raises={"boom": RuntimeError("socket closed")})
        scheduler, pool, containers, _ = _make(tmp_path, executor=executor)

        summary = asyncio.run(scheduler.run([_unit("boom"), _unit("ok")]))

        outcomes = {o.unit_id: o for o in summary.outcomes}
        assert outcomes["boom"].status == OutcomeStatus.FAILURE
        assert "socket closed" in outcomes["boom"].error
        assert outcomes["ok"].status == OutcomeStatus.SUCCESS
        assert "c-boom" in containers.cleaned
        assert pool.status().in_use == 0

    def test_cleanup_error_still_releases_pool(self, tmp_path):
        containers = FakeContainers(cleanup_error=RuntimeError("daemon gone"))
        scheduler, pool, _, _ = _make(tmp_path, capacity=1, containers=containers,
                                      memory_wait_timeout=0.2, force_admit=False)

        summary = asyncio.run(scheduler.run([_unit("a"), _unit("b")]))

        assert containers.launched == ["a", "b"]
        assert summary.launched == 2
        assert all(o.status != OutcomeStatus.RESOURCE_EXHAUSTED for o in summary.outcomes)
        assert pool.status().in_use == 0

    def test_escaped_exception_outcome_is_published(self, tmp_path):
        containers = FakeContainers(launch_error=RuntimeUnavailable("daemon gone"))
        scheduler, pool, _, _ = _make(tmp_path, containers=containers)

        summary = asyncio.run(scheduler.run([_unit("a")]))

        assert summary.outcomes[0].status == OutcomeStatus.FAILURE
        polled = ResultPoller(str(tmp_path / "records")).poll()
        assert [(r.unit_id, r.outcome.status) for r in polled] == [("a", OutcomeStatus.FAILURE)]
        assert pool.status().in_use == 0


# ---------------------------------------------------------------------------
# 5. Cancellation
# ---------------------------------------------------------------------------
class TestCancellation:

    def test_cancelled_before_start(self, tmp_path):
        token = CancellationToken()
        token.cancel()
        scheduler, _, containers, _ = _make(tmp_path, token=token)

        summary = asyncio.run(scheduler.run([_unit("a"), _unit("b")]))

        assert summary.status == "interrupted"
        assert summary.cancelled == 2
        assert containers.launched == []

    def test_interrupt_mid_run(self, tmp_path):
        token = CancellationToken()

        def interrupt(unit_id):
            if unit_id == "U1":
                token.cancel()

        executor = FakeExecutor(exit_codes={"U1": 137}, on_run=interrupt)
        scheduler, pool, containers, _ = _make(tmp_path, capacity=1, executor=executor, token=token)

        summary = asyncio.run(scheduler.run([_unit("U1"), _unit("U2")]))

        outcomes = {o.unit_id: o for o in summary.outcomes}
        assert outcomes["U1"].status == OutcomeStatus.CANCELLED
        assert outcomes["U2"].status == OutcomeStatus.CANCELLED
        assert containers.launched == ["U1"]
        assert summary.status == "interrupted"
        assert pool.status().in_use == 0

    def test_completed_success_kept_after_interrupt(self, tmp_path):
        token = CancellationToken()
        executor = FakeExecutor(on_run=lambda unit_id: token.cancel())
        scheduler, _, _, _ = _make(tmp_path, capacity=1, executor=executor, token=token)

        summary = asyncio.run(scheduler.run([_unit("only")]))

        assert summary.outcomes[0].status == OutcomeStatus.SUCCESS
        assert summary.status == "interrupted"

    def test_interrupt_during_launch_skips_command(self, tmp_path):
        token = CancellationToken()
        containers = FakeContainers(on_launch=lambda unit_id: token.cancel())
        scheduler, pool, _, executor = _make(tmp_path, capacity=1, containers=containers, token=token)

        summary = asyncio.run(scheduler.run([_unit("a")]))

        assert executor.events == []
        assert summary.outcomes[0].status == OutcomeStatus.CANCELLED
        assert summary.outcomes[0].container_id == "c-a"
        assert containers.cleaned == ["c-a"]
        assert pool.status().in_use == 0
