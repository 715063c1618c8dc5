"""Job lifecycle orchestration: create, run, terminate and delete jobs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import string
import time
from typing import Any

from cletus.config import Settings
from cletus.orchestrator.backend.base import AgentBackend, ProcessHandle
from cletus.orchestrator.colors import generate_high_contrast_hex
from cletus.orchestrator.errors import (
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
    TerminationError,
)
from cletus.orchestrator.models import (
    ChunkType,
    DeleteResult,
    Job,
    JobCreated,
    JobFilter,
    JobOutputView,
    JobStatus,
    JobStreamView,
    JobSummary,
    RegistryStats,
    TerminationResult,
    now_ms,
)
from cletus.orchestrator.output import OutputPipeline, OutputSink, format_output_chunk, short_job_id
from cletus.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

_PROMPT_SUMMARY_CHARS = 100
_ID_ALPHABET = string.digits + string.ascii_lowercase
_KILL_GRACE_SECONDS = 5.0


class JobService:
    """Owns the job state machine and wires backend, pipeline and registry together.

    Each job runs in its own background task kept in ``_tasks`` so shutdown can
    wait on it. Process handles are ephemeral and live in ``_handles`` rather
    than on the stored job record.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        backend: AgentBackend,
        settings: Settings,
        sink: OutputSink | None = None,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.settings = settings
        self.pipeline = OutputPipeline(repository, sink)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._handles: dict[str, ProcessHandle] = {}
        self._random = random.Random()  # noqa: S311

    async def create_job(
        self,
        prompt: str,
        options: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> JobCreated:
        """Register a pending job and start processing it in the background."""

        if job_id is not None and await self.repository.get_job(job_id) is not None:
            raise JobConflictError(job_id)

        job = Job(
            id=job_id or self._generate_job_id(),
            prompt=prompt,
            options=dict(options or {}),
            status=JobStatus.PENDING,
            started_at=now_ms(),
            color=generate_high_contrast_hex(self._random),
        )
        await self.repository.create_job(job)
        await self.repository.create_output_stream(job.id)
        logger.info("Job created: job_id=%s prompt=%r", job.id, prompt[:_PROMPT_SUMMARY_CHARS])
        if job.options:
            logger.info("Job options: job_id=%s options=%s", job.id, job.options)

        task = asyncio.create_task(self._process_job(job.id), name=f"job:{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _done, key=job.id: self._tasks.pop(key, None))
        return JobCreated(job_id=job.id)

    async def _process_job(self, job_id: str) -> None:
        try:
            job = await self.repository.update_job(job_id, status=JobStatus.RUNNING)
            handle = await self.backend.start(job.prompt, job.options)
            self._handles[job_id] = handle

            timeout_ms = self._enforced_timeout_ms()
            try:
                exit_code = await asyncio.wait_for(
                    self._drain_and_wait(job_id, handle, job.color),
                    timeout=timeout_ms / 1000 if timeout_ms is not None else None,
                )
            except TimeoutError:
                await self._expire_job(job_id, handle, timeout_ms)
                return

            current = await self.repository.get_job(job_id)
            if current is None:
                self._handles.pop(job_id, None)
                return
            if current.status != JobStatus.RUNNING:
                # terminate_job owns the transition out of running
                return
            self._handles.pop(job_id, None)
            if exit_code == 0:
                await self.complete_job(job_id, JobStatus.COMPLETED)
            else:
                await self.complete_job(
                    job_id,
                    JobStatus.FAILED,
                    f"Process exited with code {exit_code}",
                )
        except Exception as error:  # noqa: BLE001
            self._handles.pop(job_id, None)
            current = await self.repository.get_job(job_id)
            if current is None or current.status.is_terminal:
                logger.debug("Background error for finished job %s: %s", job_id, error)
                return
            logger.exception("Background job processing failed: job_id=%s", job_id)
            await self.complete_job(job_id, JobStatus.FAILED, str(error))

    async def _drain_and_wait(self, job_id: str, handle: ProcessHandle, color: str) -> int:
        await self.pipeline.drain(job_id, handle, color)
        return await handle.wait()

    def _enforced_timeout_ms(self) -> int | None:
        if not self.settings.jobs.enforce_timeout:
            return None
        return self.settings.jobs.default_timeout_ms

    async def _expire_job(self, job_id: str, handle: ProcessHandle, timeout_ms: int | None) -> None:
        current = await self.repository.get_job(job_id)
        if current is None or current.status != JobStatus.RUNNING:
            return
        self._handles.pop(job_id, None)
        try:
            handle.kill()
        except OSError as error:
            logger.warning("Failed to kill timed out job %s: %s", job_id, error)
        await self.complete_job(
            job_id,
            JobStatus.FAILED,
            f"Process timed out after {timeout_ms} ms",
        )
        await _release(handle)

    async def complete_job(self, job_id: str, status: JobStatus, detail: str = "") -> None:
        """Append the closing banner and write the terminal status."""

        job = await self.repository.get_job(job_id)
        if job is None:
            return

        await self.repository.add_output_chunk(
            job_id,
            format_output_chunk(_completion_banner(status, detail), ChunkType.SYSTEM, job_id),
        )
        await self.repository.update_job(
            job_id,
            status=status,
            complete_message=job.progress + (f"\n{detail}" if detail else ""),
            finished_at=now_ms(),
        )

        if status == JobStatus.COMPLETED:
            logger.info("[%s] Process completed successfully", short_job_id(job_id))
        else:
            logger.warning(
                "[%s] Process %s%s",
                short_job_id(job_id),
                status.value,
                f": {detail}" if detail else "",
            )

    async def terminate_job(self, job_id: str) -> TerminationResult:
        """Signal a running job's process and mark it terminated.

        The intermediate ``terminating`` write happens before signaling, so of
        several concurrent calls only the first sees ``running``.
        """

        job = await self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidJobStateError("Job is not running")

        await self.repository.update_job(job_id, status=JobStatus.TERMINATING)

        handle = self._handles.get(job_id)
        if handle is None:
            await self._revert_to_running(job_id)
            raise TerminationError("No active process to terminate")

        try:
            signaled = handle.kill()
        except Exception:
            await self._revert_to_running(job_id)
            raise
        if not signaled:
            await self._revert_to_running(job_id)
            raise TerminationError("Failed to terminate process")

        self._handles.pop(job_id, None)
        await self.complete_job(job_id, JobStatus.TERMINATED, "Process terminated by user")
        return TerminationResult(success=True, status=JobStatus.TERMINATED)

    async def _revert_to_running(self, job_id: str) -> None:
        if await self.repository.get_job(job_id) is not None:
            await self.repository.update_job(job_id, status=JobStatus.RUNNING)

    async def delete_job(self, job_id: str) -> DeleteResult:
        """Remove a non-running job; absent ids succeed."""

        job = await self.repository.get_job(job_id)
        if job is None:
            return DeleteResult(success=True)
        if job.status == JobStatus.RUNNING:
            raise InvalidJobStateError("Cannot delete running job")
        await self.repository.delete_job(job_id)
        return DeleteResult(success=True)

    async def get_job(self, job_id: str) -> Job | None:
        return await self.repository.get_job(job_id)

    async def list_jobs(self, job_filter: JobFilter | None = None) -> list[JobSummary]:
        jobs = await self.repository.list_jobs(job_filter)
        return [
            JobSummary(
                id=job.id,
                prompt=_truncate(job.prompt),
                status=job.status,
                started_at=job.started_at,
                finished_at=job.finished_at,
                color=job.color,
                has_complete_message=bool(job.complete_message),
            )
            for job in jobs
        ]

    async def get_job_output(self, job_id: str) -> JobOutputView | None:
        job = await self.repository.get_job(job_id)
        if job is None:
            return None
        return JobOutputView(
            job_id=job_id,
            output_history=job.output_history,
            status=job.status,
            color=job.color,
        )

    async def get_job_stream(self, job_id: str, since: int = 0) -> JobStreamView | None:
        """Chunks newer than `since` (epoch ms) for polling readers."""

        job = await self.repository.get_job(job_id)
        if job is None:
            return None
        stream = await self.repository.get_output_stream(job_id, since)
        return JobStreamView(
            job_id=job_id,
            chunks=stream.chunks if stream is not None else [],
            status=job.status,
            color=job.color,
            last_update=stream.last_update if stream is not None else job.started_at,
        )

    async def get_stats(self) -> RegistryStats:
        return await self.repository.get_stats()

    async def cleanup(self, retention_ms: int | None = None) -> int:
        """Sweep old non-running jobs; defaults to the configured retention."""

        if retention_ms is None:
            retention_ms = self.settings.jobs.retention_ms
        removed = await self.repository.cleanup(retention_ms)
        if removed:
            logger.info("Cleanup removed %d job(s)", removed)
        return removed

    async def run_cleanup_loop(self, interval_ms: int | None = None) -> None:
        """Sweep periodically until cancelled."""

        interval_ms = interval_ms or self.settings.jobs.cleanup_interval_ms
        while True:
            await asyncio.sleep(interval_ms / 1000)
            await self.cleanup()

    def has_active_process(self, job_id: str) -> bool:
        return job_id in self._handles

    def active_job_ids(self) -> list[str]:
        return list(self._tasks)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Wait for the job's background task to finish and return the job."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.repository.get_job(job_id)

    async def shutdown(self, timeout: float | None = 10.0) -> None:
        """Terminate running jobs and wait for every background task."""

        for job_id in list(self._handles):
            try:
                await self.terminate_job(job_id)
            except Exception as error:  # noqa: BLE001
                logger.warning("Shutdown could not terminate job %s: %s", job_id, error)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    def _generate_job_id(self) -> str:
        suffix = "".join(self._random.choice(_ID_ALPHABET) for _ in range(9))
        return f"job_{int(time.time() * 1000)}_{suffix}"


def _completion_banner(status: JobStatus, detail: str) -> str:
    if status == JobStatus.COMPLETED:
        return "\n--- Process completed successfully ---"
    label = "terminated" if status == JobStatus.TERMINATED else "failed"
    return f"\n--- Process {label}{': ' + detail if detail else ''} ---"


def _truncate(prompt: str) -> str:
    if len(prompt) > _PROMPT_SUMMARY_CHARS:
        return prompt[:_PROMPT_SUMMARY_CHARS] + "..."
    return prompt


async def _release(handle: ProcessHandle) -> None:
    """Close the output streams of a killed process and reap its exit code."""

    for stream in (handle.stdout, handle.stderr):
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(RuntimeError):
                await aclose()
    with contextlib.suppress(asyncio.CancelledError, TimeoutError):
        await asyncio.wait_for(handle.wait(), timeout=_KILL_GRACE_SECONDS)
