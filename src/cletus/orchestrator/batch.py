"""Batch fan-out over prompts and fan-in over job id sets."""

from __future__ import annotations

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from typing import Any

from cletus.config import Settings
from cletus.orchestrator.errors import BatchCreateError, JobError
from cletus.orchestrator.models import JobStatus, OutputChunk, now_ms
from cletus.orchestrator.output import short_job_id
from cletus.orchestrator.service import JobService

logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 50_000
_VERIFY_DELAY_SECONDS = 0.1
_BATCH_ID_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(slots=True)
class BatchCreated:
    """Jobs started together from one prompt list."""

    batch_id: str
    job_ids: list[str]
    count: int
    options: dict[str, Any]
    created_at: int
    status: str = "started"


@dataclass(slots=True)
class BatchJobStatus:
    """Status row for one job of a batch."""

    id: str
    status: JobStatus
    started_at: int
    finished_at: int | None
    has_output: bool
    color: str
    duration_ms: int | None = None
    progress_preview: str | None = None
    progress_length: int | None = None
    output_count: int | None = None
    last_output: OutputChunk | None = None


@dataclass(slots=True)
class BatchStatusSummary:
    total: int
    found: int
    not_found: int
    errors: int
    by_status: dict[str, int]
    completion_rate: float
    failure_rate: float
    avg_duration_ms: float


@dataclass(slots=True)
class BatchStatusReport:
    jobs: list[BatchJobStatus]
    not_found: list[str]
    errors: list[dict[str, str]]
    summary: BatchStatusSummary


@dataclass(slots=True)
class BatchItemResult:
    """Outcome of a bulk terminate/delete for one job id."""

    job_id: str
    success: bool = False
    status: JobStatus | None = None
    error: str | None = None
    finished_at: int | None = None


@dataclass(slots=True)
class TerminateSummary:
    total: int
    processed: int
    terminated: int
    failed: int
    already_stopped: int
    duration_ms: int


@dataclass(slots=True)
class TerminateBatchReport:
    results: list[BatchItemResult]
    summary: TerminateSummary
    force: bool
    wait: bool
    timeout_ms: int


@dataclass(slots=True)
class DeleteSummary:
    total: int
    deleted: int
    failed: int
    by_status: dict[str, int]
    errors: list[dict[str, str | None]]


@dataclass(slots=True)
class OutputSnapshot:
    status: JobStatus
    output_count: int
    last_chunk: OutputChunk | None
    color: str


@dataclass(slots=True)
class DeleteBatchReport:
    results: list[BatchItemResult]
    summary: DeleteSummary
    force: bool
    include_output: bool
    output_data: dict[str, OutputSnapshot] = field(default_factory=dict)
    verification: dict[str, bool] = field(default_factory=dict)


class BatchCoordinator:
    """Create jobs from prompt lists and run per-item isolated bulk operations."""

    def __init__(
        self,
        service: JobService,
        settings: Settings,
        *,
        verify_delay_seconds: float = _VERIFY_DELAY_SECONDS,
    ) -> None:
        self.service = service
        self.settings = settings
        self.verify_delay_seconds = verify_delay_seconds
        self._random = random.Random()  # noqa: S311

    async def create_batch(
        self,
        prompts: list[str],
        options: dict[str, Any] | None = None,
    ) -> BatchCreated:
        """Create one job per prompt, in order.

        Jobs created before a failure keep running; the raised error lists them.
        """

        options = dict(options or {})
        job_ids: list[str] = []
        for index, prompt in enumerate(prompts):
            try:
                created = await self.service.create_job(prompt, options)
            except JobError as error:
                raise BatchCreateError(
                    f"Batch stopped at prompt {index}: {error}",
                    job_ids=job_ids,
                ) from error
            job_ids.append(created.job_id)

        logger.info(
            "Started batch of %d jobs: %s",
            len(prompts),
            ", ".join(short_job_id(job_id) for job_id in job_ids),
        )
        return BatchCreated(
            batch_id=self._generate_batch_id(),
            job_ids=job_ids,
            count=len(prompts),
            options=options,
            created_at=now_ms(),
        )

    async def batch_status(
        self,
        job_ids: list[str],
        *,
        include_output: bool = False,
        include_progress: bool = False,
    ) -> BatchStatusReport:
        jobs: list[BatchJobStatus] = []
        not_found: list[str] = []
        errors: list[dict[str, str]] = []

        for job_id in job_ids:
            try:
                job = await self.service.get_job(job_id)
            except Exception as error:  # noqa: BLE001
                logger.error("Error getting job %s: %s", job_id, error)
                errors.append({"job_id": job_id, "error": str(error)})
                continue
            if job is None:
                not_found.append(job_id)
                continue

            row = BatchJobStatus(
                id=job.id,
                status=job.status,
                started_at=job.started_at,
                finished_at=job.finished_at,
                has_output=bool(job.output_history or job.progress),
                color=job.color,
            )
            if include_progress and job.progress:
                row.progress_preview = job.progress[:200]
                row.progress_length = len(job.progress)
            if include_output:
                row.output_count = len(job.output_history)
                row.last_output = job.output_history[-1] if job.output_history else None
            if job.finished_at and job.started_at:
                row.duration_ms = job.finished_at - job.started_at
            jobs.append(row)

        by_status = {status.value: 0 for status in JobStatus}
        for row in jobs:
            by_status[row.status.value] += 1
        durations = [row.duration_ms for row in jobs if row.duration_ms]
        found = len(jobs)
        return BatchStatusReport(
            jobs=jobs,
            not_found=not_found,
            errors=errors,
            summary=BatchStatusSummary(
                total=len(job_ids),
                found=found,
                not_found=len(not_found),
                errors=len(errors),
                by_status=by_status,
                completion_rate=by_status[JobStatus.COMPLETED.value] / found if found else 0.0,
                failure_rate=by_status[JobStatus.FAILED.value] / found if found else 0.0,
                avg_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            ),
        )

    async def terminate_batch(
        self,
        job_ids: list[str],
        *,
        force: bool = False,
        wait: bool = False,
        timeout_ms: int = 5_000,
    ) -> TerminateBatchReport:
        """Terminate each job independently.

        ``force`` reports success for jobs that already stopped; ``wait``
        re-reads terminated jobs after a grace period to confirm the state.
        """

        started = time.monotonic()
        results: list[BatchItemResult] = []
        for job_id in job_ids:
            results.append(await self._terminate_one(job_id, force=force))
            if wait and (time.monotonic() - started) * 1000 > timeout_ms:
                break

        if wait:
            for result in results:
                if result.success and result.status == JobStatus.TERMINATED:
                    await self._verify_terminated(result)

        terminated = sum(
            1 for result in results if result.success and result.status == JobStatus.TERMINATED
        )
        return TerminateBatchReport(
            results=results,
            summary=TerminateSummary(
                total=len(job_ids),
                processed=len(results),
                terminated=terminated,
                failed=sum(1 for result in results if not result.success),
                already_stopped=sum(
                    1
                    for result in results
                    if result.success and result.status != JobStatus.TERMINATED
                ),
                duration_ms=int((time.monotonic() - started) * 1000),
            ),
            force=force,
            wait=wait,
            timeout_ms=timeout_ms,
        )

    async def _terminate_one(self, job_id: str, *, force: bool) -> BatchItemResult:
        result = BatchItemResult(job_id=job_id)
        try:
            if force:
                job = await self.service.get_job(job_id)
                if job is None:
                    result.error = "Job not found"
                    return result
                if job.status != JobStatus.RUNNING:
                    result.success = True
                    result.status = job.status
                    result.error = f"Job was already {job.status.value}"
                    return result
            outcome = await self.service.terminate_job(job_id)
            result.success = True
            result.status = outcome.status
            result.finished_at = now_ms()
        except Exception as error:  # noqa: BLE001
            logger.error("Error terminating job %s: %s", job_id, error)
            result.error = str(error)
        return result

    async def _verify_terminated(self, result: BatchItemResult) -> None:
        try:
            await asyncio.sleep(self.verify_delay_seconds)
            job = await self.service.get_job(result.job_id)
        except Exception as error:  # noqa: BLE001
            result.success = False
            result.error = f"Failed to verify termination: {error}"
            return
        if job is not None and job.status != JobStatus.TERMINATED:
            result.success = False
            result.error = f"Termination initiated but job still {job.status.value}"

    async def delete_batch(
        self,
        job_ids: list[str],
        *,
        force: bool = False,
        include_output: bool = False,
        verify: bool = True,
    ) -> DeleteBatchReport:
        """Delete each job independently; ``force`` terminates running jobs first."""

        results: list[BatchItemResult] = []
        output_data: dict[str, OutputSnapshot] = {}
        for job_id in job_ids:
            results.append(
                await self._delete_one(
                    job_id,
                    force=force,
                    output_data=output_data if include_output else None,
                ),
            )

        verification: dict[str, bool] = {}
        if verify:
            for result in results:
                if not result.success:
                    continue
                still_there = await self.service.get_job(result.job_id)
                verification[result.job_id] = still_there is None
                if still_there is not None:
                    result.success = False
                    result.error = "Job still exists after deletion attempt"

        by_status: dict[str, int] = {}
        for result in results:
            if result.status is not None:
                by_status[result.status.value] = by_status.get(result.status.value, 0) + 1
        failures = [result for result in results if not result.success]
        return DeleteBatchReport(
            results=results,
            summary=DeleteSummary(
                total=len(job_ids),
                deleted=len(results) - len(failures),
                failed=len(failures),
                by_status=by_status,
                errors=[{"job_id": result.job_id, "error": result.error} for result in failures],
            ),
            force=force,
            include_output=include_output,
            output_data=output_data,
            verification=verification,
        )

    async def _delete_one(
        self,
        job_id: str,
        *,
        force: bool,
        output_data: dict[str, OutputSnapshot] | None,
    ) -> BatchItemResult:
        result = BatchItemResult(job_id=job_id)
        try:
            job = await self.service.get_job(job_id)
            if job is None:
                result.error = "Job not found"
                return result
            result.status = job.status

            if output_data is not None:
                output = await self.service.get_job_output(job_id)
                if output is not None:
                    output_data[job_id] = OutputSnapshot(
                        status=output.status,
                        output_count=len(output.output_history),
                        last_chunk=output.output_history[-1] if output.output_history else None,
                        color=output.color,
                    )

            if force and job.status == JobStatus.RUNNING:
                try:
                    await self.service.terminate_job(job_id)
                    await asyncio.sleep(self.verify_delay_seconds)
                except JobError as error:
                    logger.warning("Failed to terminate job %s before deletion: %s", job_id, error)

            await self.service.delete_job(job_id)
            result.success = True
            result.finished_at = now_ms()
        except Exception as error:  # noqa: BLE001
            logger.error("Error deleting job %s: %s", job_id, error)
            result.error = str(error)
        return result

    def limits(self) -> dict[str, Any]:
        """Batch limits and timing values for API consumers."""

        return {
            "maxBatchSize": self.settings.jobs.max_batch_size,
            "maxPromptLength": MAX_PROMPT_LENGTH,
            "maxJobsInMemory": self.settings.storage.max_jobs_in_memory,
            "maxOutputChunks": self.settings.storage.max_output_chunks,
            "defaultTimeout": self.settings.jobs.default_timeout_ms,
            "retentionPeriod": self.settings.jobs.retention_ms,
            "cleanupInterval": self.settings.jobs.cleanup_interval_ms,
            "storageBackend": self.settings.storage.backend,
        }

    def _generate_batch_id(self) -> str:
        suffix = "".join(self._random.choice(_BATCH_ID_ALPHABET) for _ in range(6))
        return f"batch_{int(time.time() * 1000)}_{suffix}"


def validate_batch_prompts(prompts: list[Any], settings: Settings) -> list[str]:
    """Request-boundary validation for a prompt list; raises ValueError."""

    if not isinstance(prompts, list) or not prompts:
        raise ValueError("Missing or invalid prompts array")
    if len(prompts) > settings.jobs.max_batch_size:
        raise ValueError(f"Maximum {settings.jobs.max_batch_size} prompts allowed per batch")
    for index, prompt in enumerate(prompts):
        if not isinstance(prompt, str):
            raise ValueError(f"Prompt at index {index} must be a string")
        if not prompt.strip():
            raise ValueError(f"Prompt at index {index} cannot be empty")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValueError(f"Prompt at index {index} too long (max 50KB)")
    return prompts


def parse_job_ids(raw: str, settings: Settings) -> list[str]:
    """Split a comma-separated id list and enforce the batch size cap."""

    job_ids = [part.strip() for part in raw.split(",") if part.strip()]
    if not job_ids:
        raise ValueError("At least one job ID is required")
    if len(job_ids) > settings.jobs.max_batch_size:
        raise ValueError(f"Maximum {settings.jobs.max_batch_size} job IDs allowed per request")
    return job_ids
