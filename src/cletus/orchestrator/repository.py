"""Bounded in-memory job registry with capacity eviction and retention cleanup."""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from cletus.config import Settings
from cletus.orchestrator.errors import CapacityExceededError, JobNotFoundError
from cletus.orchestrator.models import (
    EVICTABLE_STATUSES,
    Job,
    JobFilter,
    JobStatus,
    OutputChunk,
    OutputStreamView,
    RegistryStats,
    now_ms,
)


class JobRepository(Protocol):
    """Storage contract used by the job service."""

    async def create_job(self, job: Job) -> Job: ...

    async def get_job(self, job_id: str) -> Job | None: ...

    async def update_job(self, job_id: str, **changes: Any) -> Job: ...

    async def delete_job(self, job_id: str) -> bool: ...

    async def list_jobs(self, job_filter: JobFilter | None = None) -> list[Job]: ...

    async def create_output_stream(self, job_id: str) -> None: ...

    async def add_output_chunk(self, job_id: str, chunk: OutputChunk) -> None: ...

    async def get_output_stream(self, job_id: str, since: int = 0) -> OutputStreamView | None: ...

    async def delete_output_stream(self, job_id: str) -> bool: ...

    async def cleanup(self, retention_ms: int) -> int: ...

    async def get_stats(self) -> RegistryStats: ...

    async def clear(self) -> None: ...


@dataclass(slots=True)
class _OutputStream:
    chunks: deque[OutputChunk]
    last_update: int = field(default=0)


class InMemoryJobRepository:
    """Job and output-stream maps sharing one slot per job.

    Methods never suspend between reading and writing shared state, so each
    call is atomic with respect to other tasks on the same event loop.
    """

    def __init__(
        self,
        *,
        max_jobs: int = 1_000,
        max_output_chunks: int = 1_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.max_jobs = max_jobs
        self.max_output_chunks = max_output_chunks
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._streams: dict[str, _OutputStream] = {}

    async def create_job(self, job: Job) -> Job:
        """Insert a job, evicting the oldest finished job when at capacity."""

        if len(self._jobs) >= self.max_jobs:
            candidates = [
                stored for stored in self._jobs.values() if stored.status in EVICTABLE_STATUSES
            ]
            if not candidates:
                raise CapacityExceededError("Maximum job limit reached")
            oldest = min(candidates, key=lambda stored: stored.finished_at or 0)
            self._remove(oldest.id)

        stored = _copy_job(job)
        _trim(stored.output_history, self.max_output_chunks)
        self._jobs[job.id] = stored
        return _copy_job(stored)

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return _copy_job(job) if job is not None else None

    async def update_job(self, job_id: str, **changes: Any) -> Job:
        """Shallow-merge fields onto the stored job."""

        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if "output_history" in changes:
            changes["output_history"] = list(changes["output_history"])
            _trim(changes["output_history"], self.max_output_chunks)
        updated = replace(job, **changes)
        self._jobs[job_id] = updated
        return _copy_job(updated)

    async def delete_job(self, job_id: str) -> bool:
        existed = job_id in self._jobs
        self._remove(job_id)
        return existed

    async def list_jobs(self, job_filter: JobFilter | None = None) -> list[Job]:
        """Jobs matching every supplied predicate, newest `started_at` first."""

        job_filter = job_filter or JobFilter()
        jobs = list(self._jobs.values())
        if job_filter.status is not None:
            jobs = [job for job in jobs if job.status == job_filter.status]
        if job_filter.since is not None:
            jobs = [job for job in jobs if job.started_at >= job_filter.since]
        if job_filter.before is not None:
            jobs = [job for job in jobs if job.started_at <= job_filter.before]
        jobs.sort(key=lambda job: job.started_at, reverse=True)
        return [_copy_job(job) for job in jobs]

    async def create_output_stream(self, job_id: str) -> None:
        self._streams[job_id] = _OutputStream(
            chunks=deque(maxlen=self.max_output_chunks),
            last_update=self._clock(),
        )

    async def add_output_chunk(self, job_id: str, chunk: OutputChunk) -> None:
        """Append to the stream (created on demand) and to the job history."""

        stream = self._streams.get(job_id)
        if stream is None:
            stream = _OutputStream(chunks=deque(maxlen=self.max_output_chunks))
            self._streams[job_id] = stream
        stream.chunks.append(chunk)
        stream.last_update = self._clock()

        job = self._jobs.get(job_id)
        if job is not None:
            job.output_history.append(chunk)
            _trim(job.output_history, self.max_output_chunks)

    async def get_output_stream(self, job_id: str, since: int = 0) -> OutputStreamView | None:
        """Chunks strictly newer than `since`; all chunks when `since` is 0."""

        stream = self._streams.get(job_id)
        if stream is None:
            return None
        if since > 0:
            chunks = [chunk for chunk in stream.chunks if chunk.timestamp > since]
        else:
            chunks = list(stream.chunks)
        return OutputStreamView(chunks=chunks, last_update=stream.last_update)

    async def delete_output_stream(self, job_id: str) -> bool:
        return self._streams.pop(job_id, None) is not None

    async def cleanup(self, retention_ms: int) -> int:
        """Remove non-running jobs older than the retention window."""

        cutoff = self._clock() - retention_ms
        expired: list[str] = []
        for job in self._jobs.values():
            if job.status == JobStatus.RUNNING:
                continue
            timestamp = job.finished_at or job.started_at
            if timestamp and timestamp < cutoff:
                expired.append(job.id)
        for job_id in expired:
            self._remove(job_id)
        return len(expired)

    async def get_stats(self) -> RegistryStats:
        by_status = Counter(job.status.value for job in self._jobs.values())
        return RegistryStats(
            total_jobs=len(self._jobs),
            total_streams=len(self._streams),
            jobs_by_status=dict(by_status),
            max_jobs=self.max_jobs,
            max_output_chunks=self.max_output_chunks,
        )

    async def clear(self) -> None:
        self._jobs.clear()
        self._streams.clear()

    def _remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._streams.pop(job_id, None)


def create_repository(settings: Settings, *, clock: Callable[[], int] = now_ms) -> JobRepository:
    """Build the configured storage backend."""

    backend = settings.storage.backend
    if backend == "memory":
        return InMemoryJobRepository(
            max_jobs=settings.storage.max_jobs_in_memory,
            max_output_chunks=settings.storage.max_output_chunks,
            clock=clock,
        )
    if backend in {"file", "redis"}:
        raise NotImplementedError(
            f"{backend} storage is not implemented. Use memory storage instead.",
        )
    raise ValueError(f"Unknown storage backend: {backend!r}")


def _copy_job(job: Job) -> Job:
    return replace(job, options=dict(job.options), output_history=list(job.output_history))


def _trim(history: list[OutputChunk], limit: int) -> None:
    overflow = len(history) - limit
    if overflow > 0:
        del history[:overflow]
