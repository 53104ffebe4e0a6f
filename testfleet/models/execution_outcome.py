"""
Execution Outcome Model
=======================
The recorded result of running one unit.

Fields:
    unit_id            — owning unit
    exit_code          — command exit code (-1 when the command never ran)
    stdout / stderr    — captured separately, never interleaved
    duration_seconds   — wall clock, monotonic
    status             — success / failure from the executor; the scheduler adds
                         skipped / cancelled / resource_exhausted
    error              — infrastructure message (launch failure, missing container)
    container_id       — container the command ran in, if any
    artifact_dir       — build artifact directory, build phase only

Only the JSON form of this model is written to result records; stdout and
stderr are additionally written to the companion output record.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    RESOURCE_EXHAUSTED = "resource_exhausted"


class ExecutionOutcome(BaseModel):
    unit_id: str
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    status: OutcomeStatus = OutcomeStatus.FAILURE
    error: Optional[str] = None
    container_id: Optional[str] = None
    artifact_dir: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class PublishedRecord(BaseModel):
    unit_id: str
    producer_token: str
    random_token: str
    result_path: str
    output_path: str


class PolledResult(BaseModel):
    unit_id: str
    producer_token: str
    random_token: str
    result_path: str
    output_path: Optional[str] = None
    outcome: ExecutionOutcome
