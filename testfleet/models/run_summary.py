"""
Run Summary Models
==================
Aggregate records returned by the scheduler and the cleanup paths.

RunSummary.status is ``success`` only when every unit succeeded, ``interrupted``
when the run was cancelled, and ``failure`` otherwise.
"""
from pydantic import BaseModel, Field

from testfleet.models.execution_outcome import ExecutionOutcome, OutcomeStatus


class RunSummary(BaseModel):
    outcomes: list[ExecutionOutcome] = Field(default_factory=list)
    total: int = 0
    launched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    batches: list[list[str]] = Field(default_factory=list)
    peak_running: int = 0
    status: str = "success"

    @classmethod
    def from_outcomes(cls, outcomes: list[ExecutionOutcome], batches: list[list[str]],
                      launched: int, peak_running: int, interrupted: bool = False) -> "RunSummary":
        counts = {status: 0 for status in OutcomeStatus}
        for outcome in outcomes:
            counts[outcome.status] += 1

        if interrupted:
            status = "interrupted"
        elif outcomes and counts[OutcomeStatus.SUCCESS] == len(outcomes):
            status = "success"
        elif not outcomes:
            status = "success"
        else:
            status = "failure"

        return cls(
            outcomes=outcomes,
            total=len(outcomes),
            launched=launched,
            succeeded=counts[OutcomeStatus.SUCCESS],
            failed=counts[OutcomeStatus.FAILURE] + counts[OutcomeStatus.RESOURCE_EXHAUSTED],
            skipped=counts[OutcomeStatus.SKIPPED],
            cancelled=counts[OutcomeStatus.CANCELLED],
            batches=batches,
            peak_running=peak_running,
            status=status,
        )


class CleanupReport(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[str] = Field(default_factory=list)


class ShutdownReport(BaseModel):
    containers_cleaned: int = 0
    containers_failed: int = 0
    remaining_tracked: int = 0
    temp_files_removed: int = 0
    pool_released: bool = False
