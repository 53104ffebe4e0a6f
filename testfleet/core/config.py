"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    TESTFLEET_MAX_PARALLEL         — Explicit concurrency ceiling (default: CPU core count)
    TESTFLEET_MEMORY_PER_UNIT_GB   — Explicit per-container memory (default: auto)
    TESTFLEET_TOTAL_MEMORY_GB      — Total memory ceiling (default: host available memory)
    TESTFLEET_MEMORY_HEADROOM      — Percentage of memory kept free, 0-99 (default: 20)
    TESTFLEET_SCRATCH_ROOT         — Root for every file the engine writes (default: system temp dir)
    TESTFLEET_GRACE_PERIOD         — Seconds a container gets to stop on first interrupt (default: 10)
    TESTFLEET_POLL_INTERVAL        — Seconds between memory / result polls (default: 0.5)
    TESTFLEET_MEMORY_WAIT_TIMEOUT  — Seconds a unit waits for memory before fallback (default: 30)
    TESTFLEET_FORCE_ADMIT          — Admit a unit anyway after the memory wait (default: true)
    TESTFLEET_CONTAINER_PREFIX     — Prefix for container names (default: testfleet)
    TESTFLEET_LOG_LEVEL            — Root log level (default: INFO)

Memory precedence:
    An explicit total overrides host detection; an explicit per-unit value
    overrides the auto-computed share. See resources/memory.py for the rules
    applied when the two disagree.

Values are read once at import time as raw strings. ``load_settings()`` parses
and validates them and applies per-invocation overrides (e.g. from main.py
flags); anything invalid raises ConfigurationError before a single container is launched.
"""
import os
import tempfile
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from testfleet.core.errors import ConfigurationError

load_dotenv()


def _optional(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


# Raw strings; ResourceSettings parses and range-checks them
MAX_PARALLEL = _optional("TESTFLEET_MAX_PARALLEL")
MEMORY_PER_UNIT_GB = _optional("TESTFLEET_MEMORY_PER_UNIT_GB")
TOTAL_MEMORY_GB = _optional("TESTFLEET_TOTAL_MEMORY_GB")
MEMORY_HEADROOM_PERCENT = os.getenv("TESTFLEET_MEMORY_HEADROOM", "20")
SCRATCH_ROOT = os.getenv("TESTFLEET_SCRATCH_ROOT", tempfile.gettempdir())
GRACE_PERIOD_SECONDS = os.getenv("TESTFLEET_GRACE_PERIOD", "10")
POLL_INTERVAL_SECONDS = os.getenv("TESTFLEET_POLL_INTERVAL", "0.5")
MEMORY_WAIT_TIMEOUT_SECONDS = os.getenv("TESTFLEET_MEMORY_WAIT_TIMEOUT", "30")
FORCE_ADMIT = os.getenv("TESTFLEET_FORCE_ADMIT", "true")
CONTAINER_PREFIX = os.getenv("TESTFLEET_CONTAINER_PREFIX", "testfleet")
LOG_LEVEL = os.getenv("TESTFLEET_LOG_LEVEL", "INFO")


class ResourceSettings(BaseModel):
    """Validated configuration surface consumed by the pool and scheduler."""

    max_parallel: Optional[int] = Field(default=None, ge=1)
    memory_per_unit_gb: Optional[float] = Field(default=None, gt=0)
    total_memory_gb: Optional[float] = Field(default=None, gt=0)
    memory_headroom_percent: int = Field(default=20, ge=0, le=99)
    scratch_root: str = tempfile.gettempdir()
    grace_period_seconds: float = Field(default=10.0, ge=0)
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    memory_wait_timeout_seconds: float = Field(default=30.0, ge=0)
    force_admit: bool = True
    container_prefix: str = Field(default="testfleet", pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{value}'")
        return level

    @property
    def memory_per_unit_bytes(self) -> Optional[int]:
        if self.memory_per_unit_gb is None:
            return None
        return int(self.memory_per_unit_gb * 1024 ** 3)

    @property
    def total_memory_bytes(self) -> Optional[int]:
        if self.total_memory_gb is None:
            return None
        return int(self.total_memory_gb * 1024 ** 3)


def load_settings(**overrides) -> ResourceSettings:
    """
    Build ResourceSettings from the environment plus explicit overrides.

    Overrides whose value is None are ignored so that unset CLI flags fall
    back to the environment.

    Raises
    ------
    ConfigurationError
        If any value is out of range.
    """
    values = {
        "max_parallel": MAX_PARALLEL,
        "memory_per_unit_gb": MEMORY_PER_UNIT_GB,
        "total_memory_gb": TOTAL_MEMORY_GB,
        "memory_headroom_percent": MEMORY_HEADROOM_PERCENT,
        "scratch_root": SCRATCH_ROOT,
        "grace_period_seconds": GRACE_PERIOD_SECONDS,
        "poll_interval_seconds": POLL_INTERVAL_SECONDS,
        "memory_wait_timeout_seconds": MEMORY_WAIT_TIMEOUT_SECONDS,
        "force_admit": FORCE_ADMIT,
        "container_prefix": CONTAINER_PREFIX,
        "log_level": LOG_LEVEL,
    }
    values.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return ResourceSettings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
