"""
Host Probe
Reads CPU core count and memory totals from the host via psutil.
"""
import logging
import os

import psutil

from testfleet.core.constants import FALLBACK_TOTAL_MEMORY_BYTES

logger = logging.getLogger(__name__)


def detect_cpu_count() -> int:
    """Logical CPU cores available to this process, clamped to >= 1."""
    try:
        count = len(os.sched_getaffinity(0))
    except AttributeError:
        count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    return max(1, count)


def detect_total_memory() -> int:
    try:
        return int(psutil.virtual_memory().total)
    except (OSError, RuntimeError) as e:
        logger.warning("Could not read host memory (%s); assuming %d bytes", e, FALLBACK_TOTAL_MEMORY_BYTES)
        return FALLBACK_TOTAL_MEMORY_BYTES


def detect_available_memory() -> int:
    try:
        return int(psutil.virtual_memory().available)
    except (OSError, RuntimeError) as e:
        logger.warning("Could not read available memory (%s)", e)
        return detect_total_memory()
