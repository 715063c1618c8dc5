"""Domain models for job lifecycle and captured output."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    TERMINATING = "terminating"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TERMINATED})
EVICTABLE_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class ChunkType(str, Enum):
    """Origin of one captured output fragment."""

    STDOUT = "stdout"
    STDERR = "stderr"
    ERROR = "error"
    SYSTEM = "system"


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""

    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class OutputChunk:
    """One typed, timestamped fragment of job output."""

    text: str
    type: ChunkType
    timestamp: int
    job_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "jobId": self.job_id,
        }


@dataclass(slots=True)
class Job:
    """Stored job record. Plain value: no process handle lives here."""

    id: str
    prompt: str
    options: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    progress: str = ""
    complete_message: str = ""
    started_at: int = 0
    finished_at: int | None = None
    color: str = ""
    output_history: list[OutputChunk] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "options": self.options,
            "status": self.status.value,
            "progress": self.progress,
            "completeMessage": self.complete_message,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "color": self.color,
            "outputHistory": [chunk.to_dict() for chunk in self.output_history],
        }


@dataclass(slots=True)
class OutputStreamView:
    """Snapshot of a job output stream."""

    chunks: list[OutputChunk]
    last_update: int


@dataclass(slots=True)
class JobFilter:
    """AND-combined job listing filter; `since`/`before` bound `started_at` inclusively."""

    status: JobStatus | None = None
    since: int | None = None
    before: int | None = None


@dataclass(slots=True)
class RegistryStats:
    """Job registry occupancy."""

    total_jobs: int
    total_streams: int
    jobs_by_status: dict[str, int]
    max_jobs: int
    max_output_chunks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalJobs": self.total_jobs,
            "totalStreams": self.total_streams,
            "jobsByStatus": dict(self.jobs_by_status),
            "memoryUsage": {
                "jobs": self.total_jobs,
                "maxJobs": self.max_jobs,
                "streams": self.total_streams,
                "maxOutputChunks": self.max_output_chunks,
            },
        }


@dataclass(slots=True)
class JobCreated:
    """Acknowledgement returned when a job has been accepted."""

    job_id: str
    status: str = "started"


@dataclass(slots=True)
class JobSummary:
    """Compact listing row for one job."""

    id: str
    prompt: str
    status: JobStatus
    started_at: int
    finished_at: int | None
    color: str
    has_complete_message: bool


@dataclass(slots=True)
class JobOutputView:
    """Job-oriented output access path."""

    job_id: str
    output_history: list[OutputChunk]
    status: JobStatus
    color: str


@dataclass(slots=True)
class JobStreamView:
    """Stream-oriented output access path for polling readers."""

    job_id: str
    chunks: list[OutputChunk]
    status: JobStatus
    color: str
    last_update: int


@dataclass(slots=True)
class TerminationResult:
    success: bool
    status: JobStatus


@dataclass(slots=True)
class DeleteResult:
    success: bool
