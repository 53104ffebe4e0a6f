"""
Resource Pool
=============
Shared accounting of CPU slots and a memory byte budget for one invocation.

The pool's state lives in a JSON file inside the run directory so that
independently spawned workers (threads or processes) that ``attach()`` to the
same path observe and mutate the same counts.

ATOMICITY:
    Every mutation is a read-modify-write of the state file performed while
    holding an in-process threading.Lock AND an exclusive fcntl.flock on a
    sidecar ``.lock`` file. New state is written to a temp file and moved into
    place with os.replace, so a reader never sees a partial record.

CONTRACT:
    - acquire() is all-or-nothing and never blocks on capacity.
    - release() clamps: releasing more than is in use releases what is in use.
    - in_use + available == capacity after every operation.
"""
import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from testfleet.core.errors import ConfigurationError
from testfleet.resources.host_probe import detect_cpu_count
from testfleet.resources.memory import MemoryBudget

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------
@dataclass
class PoolSnapshot:
    capacity: int
    available: int
    in_use: int
    memory_total_bytes: int = 0
    memory_available_bytes: int = 0
    memory_in_use_bytes: int = 0


@dataclass
class AcquireResult:
    acquired: bool
    requested: int
    snapshot: PoolSnapshot


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------
class ResourcePool:
    """
    File-backed resource pool.

    Use ``ResourcePool.create()`` once per invocation and ``ResourcePool.attach()``
    from any other worker that needs the same accounting.
    """

    def __init__(self, state_path: str) -> None:
        self.state_path = state_path
        self.lock_path = f"{state_path}.lock"
        self._thread_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def create(cls, state_path: str, capacity: Optional[int] = None,
               memory: Optional[MemoryBudget] = None) -> "ResourcePool":
        """
        Initialise a fresh pool and persist its state.

        Parameters
        ----------
        state_path : str
            Location of the durable JSON state.
        capacity : int | None
            Explicit slot count, used as given (a warning is logged above the
            detected core count). None derives it from detected CPU cores.
        memory : MemoryBudget | None
            Byte budget. None disables memory accounting (memory limit is
            then the CPU capacity).
        """
        if capacity is None:
            capacity = detect_cpu_count()
        elif capacity < 1:
            raise ConfigurationError(f"Pool capacity must be >= 1, got {capacity}")
        else:
            cores = detect_cpu_count()
            if capacity > cores:
                logger.warning("Capacity %d exceeds the %d CPU core(s) available; containers will contend for CPU",
                               capacity, cores)

        pool = cls(state_path)
        state = {
            "capacity": capacity,
            "in_use": 0,
            "memory_total_bytes": memory.usable_bytes if memory else 0,
            "memory_in_use_bytes": 0,
            "per_unit_bytes": memory.per_unit_bytes if memory else 0,
            "memory_limit": memory.memory_limit if memory else capacity,
            "owner_pid": os.getpid(),
        }
        os.makedirs(os.path.dirname(os.path.abspath(state_path)), exist_ok=True)
        with pool._locked():
            pool._write(state)

        logger.info(
            "Resource pool created | capacity=%d | memory_limit=%d | state=%s",
            capacity, state["memory_limit"], state_path,
        )
        return pool

    @classmethod
    def attach(cls, state_path: str) -> "ResourcePool":
        if not os.path.exists(state_path):
            raise ConfigurationError(f"No resource pool state at {state_path}")
        return cls(state_path)

    # ------------------------------------------------------------------
    # Locking & persistence
    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self):
        with self._thread_lock:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _read(self) -> dict:
        with open(self.state_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, state: dict) -> None:
        directory = os.path.dirname(os.path.abspath(self.state_path))
        fd, tmp_path = tempfile.mkstemp(prefix=".pool-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f)
            os.replace(tmp_path, self.state_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _transaction(self, mutate: Callable[[dict], bool]) -> tuple[bool, PoolSnapshot]:
        """Apply ``mutate`` to the state under the lock; persist only if it returns True."""
        with self._locked():
            state = self._read()
            changed = mutate(state)
            if changed:
                self._write(state)
            return changed, self._snapshot(state)

    @staticmethod
    def _snapshot(state: dict) -> PoolSnapshot:
        capacity = state["capacity"]
        in_use = state["in_use"]
        mem_total = state["memory_total_bytes"]
        mem_in_use = state["memory_in_use_bytes"]
        return PoolSnapshot(
            capacity=capacity,
            available=capacity - in_use,
            in_use=in_use,
            memory_total_bytes=mem_total,
            memory_available_bytes=mem_total - mem_in_use,
            memory_in_use_bytes=mem_in_use,
        )

    @staticmethod
    def _check_count(n: int, what: str) -> None:
        if n < 1:
            raise ConfigurationError(f"{what} must be >= 1, got {n}")

    # ------------------------------------------------------------------
    # CPU slots
    # ------------------------------------------------------------------
    def acquire(self, n: int = 1) -> AcquireResult:
        self._check_count(n, "Slot request")

        def mutate(state: dict) -> bool:
            if state["capacity"] - state["in_use"] < n:
                return False
            state["in_use"] += n
            return True

        acquired, snapshot = self._transaction(mutate)
        if not acquired:
            logger.debug("Pool exhausted | requested=%d | available=%d", n, snapshot.available)
        return AcquireResult(acquired=acquired, requested=n, snapshot=snapshot)

    def release(self, n: int = 1) -> PoolSnapshot:
        self._check_count(n, "Slot release")

        def mutate(state: dict) -> bool:
            returned = min(n, state["in_use"])
            if returned < n:
                logger.warning("Releasing %d slots but only %d in use; clamping", n, state["in_use"])
            state["in_use"] -= returned
            return returned > 0

        return self._transaction(mutate)[1]

    # ------------------------------------------------------------------
    # Memory budget
    # ------------------------------------------------------------------
    def acquire_memory(self, nbytes: int) -> AcquireResult:
        self._check_count(nbytes, "Memory request")

        def mutate(state: dict) -> bool:
            if state["memory_total_bytes"] == 0:
                return True
            if state["memory_total_bytes"] - state["memory_in_use_bytes"] < nbytes:
                return False
            state["memory_in_use_bytes"] += nbytes
            return True

        acquired, snapshot = self._transaction(mutate)
        return AcquireResult(acquired=acquired, requested=nbytes, snapshot=snapshot)

    def release_memory(self, nbytes: int) -> PoolSnapshot:
        self._check_count(nbytes, "Memory release")

        def mutate(state: dict) -> bool:
            returned = min(nbytes, state["memory_in_use_bytes"])
            state["memory_in_use_bytes"] -= returned
            return returned > 0

        return self._transaction(mutate)[1]

    def force_acquire_memory(self, nbytes: int) -> int:
        """Grant whatever memory is left, up to ``nbytes``; returns the bytes granted."""
        self._check_count(nbytes, "Memory request")
        granted = {"bytes": 0}

        def mutate(state: dict) -> bool:
            free = state["memory_total_bytes"] - state["memory_in_use_bytes"]
            granted["bytes"] = max(0, min(nbytes, free))
            state["memory_in_use_bytes"] += granted["bytes"]
            return granted["bytes"] > 0

        self._transaction(mutate)
        logger.warning("Force-admitted memory | requested=%d | granted=%d", nbytes, granted["bytes"])
        return granted["bytes"]

    # ------------------------------------------------------------------
    # Inspection & teardown
    # ------------------------------------------------------------------
    def status(self) -> PoolSnapshot:
        with self._locked():
            return self._snapshot(self._read())

    def is_available(self) -> bool:
        return self.status().available > 0

    @property
    def per_unit_bytes(self) -> int:
        with self._locked():
            return self._read()["per_unit_bytes"]

    @property
    def effective_ceiling(self) -> int:
        with self._locked():
            state = self._read()
        return max(1, min(state["capacity"], state["memory_limit"]))

    def release_all(self) -> PoolSnapshot:
        def mutate(state: dict) -> bool:
            changed = state["in_use"] > 0 or state["memory_in_use_bytes"] > 0
            state["in_use"] = 0
            state["memory_in_use_bytes"] = 0
            return changed

        snapshot = self._transaction(mutate)[1]
        logger.info("Resource pool released | capacity=%d", snapshot.capacity)
        return snapshot

    def destroy(self) -> None:
        for path in (self.state_path, self.lock_path):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
        logger.debug("Resource pool state removed: %s", self.state_path)

    def exists(self) -> bool:
        return os.path.exists(self.state_path)
