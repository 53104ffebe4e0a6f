"""
Execution Unit Model
====================
Pydantic model for one independently schedulable build step or test-suite run.

Fields:
    unit_id            — unique identifier, also embedded in result record names
    image              — container image the unit runs in
    command            — shell command executed inside the container
    working_directory  — container working directory (defaults by phase)
    cpu_slots          — pool slots the unit occupies while running
    memory_bytes       — memory request; None means the pool's per-unit share
    depends_on         — unit that must succeed before this one is admitted
    phase              — build / test
    project_root       — host source tree mounted read-only (build phase only)

Units are produced by the scanner and consumed read-only, hence frozen.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from testfleet.core.constants import DEFAULT_BUILD_WORKDIR, DEFAULT_TEST_WORKDIR


class UnitPhase(str, Enum):
    BUILD = "build"
    TEST = "test"


class ExecutionUnit(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit_id: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    image: str = Field(min_length=1)
    command: str = Field(min_length=1)
    working_directory: str = ""
    cpu_slots: int = Field(default=1, ge=1)
    memory_bytes: Optional[int] = Field(default=None, ge=1)
    depends_on: Optional[str] = None
    phase: UnitPhase = UnitPhase.TEST
    project_root: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_workdir(cls, data):
        if isinstance(data, dict) and not data.get("working_directory"):
            data = dict(data)
            phase = data.get("phase", UnitPhase.TEST)
            is_build = phase == UnitPhase.BUILD or phase == "build"
            data["working_directory"] = DEFAULT_BUILD_WORKDIR if is_build else DEFAULT_TEST_WORKDIR
        return data

    @model_validator(mode="after")
    def _check_phase(self):
        if self.phase == UnitPhase.BUILD and not self.project_root:
            raise ValueError(f"build unit '{self.unit_id}' requires project_root")
        return self

    @property
    def is_build(self) -> bool:
        return self.phase == UnitPhase.BUILD
