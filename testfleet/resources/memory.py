"""
Memory Budget
=============
Derives the per-unit memory allocation and the memory-based concurrency limit.

Precedence:
    1. total memory      — explicit override, else host total (psutil)
    2. usable memory     — total * (1 - headroom / 100)
    3. per-unit memory   — explicit override, else usable / cpu_limit,
                           floored at MIN_MEMORY_PER_UNIT_BYTES
    4. memory limit      — max(1, usable // per_unit)

When an explicit per-unit value exceeds the usable budget the per-unit value
wins: units run one at a time and the byte budget is widened to exactly one
allocation so a unit can still be admitted.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from testfleet.core.constants import LOW_MEMORY_WARNING_BYTES, MIB, MIN_MEMORY_PER_UNIT_BYTES
from testfleet.core.errors import ConfigurationError
from testfleet.resources.host_probe import detect_available_memory

logger = logging.getLogger(__name__)


@dataclass
class MemoryBudget:
    total_bytes: int
    headroom_percent: int
    usable_bytes: int
    per_unit_bytes: int
    cpu_limit: int
    memory_limit: int
    clamped_to_floor: bool = False
    warnings: list[str] = field(default_factory=list)


def compute_memory_budget(cpu_limit: int,
                          headroom_percent: int = 20,
                          total_bytes: Optional[int] = None,
                          per_unit_bytes: Optional[int] = None) -> MemoryBudget:
    """
    Compute the memory budget for a pool of ``cpu_limit`` slots.

    Parameters
    ----------
    cpu_limit : int
        CPU-derived concurrency ceiling (>= 1).
    headroom_percent : int
        Share of total memory kept free, 0-99.
    total_bytes : int | None
        Explicit total memory ceiling. None means memory currently available
        on the host.
    per_unit_bytes : int | None
        Explicit per-unit allocation. None means an equal share per slot.

    Returns
    -------
    MemoryBudget

    Raises
    ------
    ConfigurationError
        If any argument is out of range.
    """
    if cpu_limit < 1:
        raise ConfigurationError(f"cpu_limit must be >= 1, got {cpu_limit}")
    if not 0 <= headroom_percent <= 99:
        raise ConfigurationError(f"memory headroom must be 0-99, got {headroom_percent}")
    if total_bytes is not None and total_bytes < 1:
        raise ConfigurationError(f"total memory must be positive, got {total_bytes}")
    if per_unit_bytes is not None and per_unit_bytes < 1:
        raise ConfigurationError(f"per-unit memory must be positive, got {per_unit_bytes}")

    if total_bytes is None:
        total_bytes = detect_available_memory()

    usable = int(total_bytes * (100 - headroom_percent) / 100)
    warnings: list[str] = []
    clamped = False

    if per_unit_bytes is None:
        per_unit = usable // cpu_limit
        if per_unit < MIN_MEMORY_PER_UNIT_BYTES:
            per_unit = MIN_MEMORY_PER_UNIT_BYTES
            clamped = True
    else:
        per_unit = per_unit_bytes

    if per_unit > usable:
        warnings.append(
            f"Per-unit memory {per_unit // MIB} MiB exceeds usable memory {usable // MIB} MiB; "
            f"units will run one at a time"
        )
        usable = per_unit
        memory_limit = 1
    else:
        memory_limit = max(1, usable // per_unit)

    if per_unit < LOW_MEMORY_WARNING_BYTES:
        warnings.append(f"Low memory allocation per unit: {per_unit // MIB} MiB")

    for message in warnings:
        logger.warning(message)

    budget = MemoryBudget(
        total_bytes=total_bytes,
        headroom_percent=headroom_percent,
        usable_bytes=usable,
        per_unit_bytes=per_unit,
        cpu_limit=cpu_limit,
        memory_limit=memory_limit,
        clamped_to_floor=clamped,
        warnings=warnings,
    )
    logger.info(
        "Memory budget | total=%d MiB | usable=%d MiB | per_unit=%d MiB | memory_limit=%d",
        total_bytes // MIB, usable // MIB, per_unit // MIB, memory_limit,
    )
    return budget
