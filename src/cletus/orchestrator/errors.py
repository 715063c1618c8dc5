"""Error taxonomy surfaced by the job orchestrator."""

from __future__ import annotations


class JobError(RuntimeError):
    """Base class for orchestrator errors visible to callers."""


class JobNotFoundError(JobError):
    """Job id is absent for an operation that requires it."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobConflictError(JobError):
    """Caller-supplied job id already exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job ID already exists: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(JobError):
    """Operation is not allowed in the job's current status."""


class CapacityExceededError(JobError):
    """Registry is full and holds no evictable job."""


class ProcessStartError(JobError):
    """Agent process could not be launched."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class TerminationError(JobError):
    """Running job could not be signaled."""


class BatchCreateError(JobError):
    """Batch creation stopped part way; already-created jobs keep running."""

    def __init__(self, message: str, *, job_ids: list[str]) -> None:
        super().__init__(message)
        self.job_ids = job_ids
