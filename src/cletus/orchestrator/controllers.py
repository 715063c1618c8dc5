"""Controllers for job CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

from cletus.config import Settings
from cletus.context import AppContext, build_context
from cletus.orchestrator.batch import validate_batch_prompts
from cletus.orchestrator.errors import JobError
from cletus.orchestrator.models import Job, JobStatus


@dataclass(slots=True)
class JobRunCommand:
    """CLI input for running one prompt."""

    prompt: str
    model: str | None
    allowed_tools: tuple[str, ...]
    disallowed_tools: tuple[str, ...]
    add_dirs: tuple[Path, ...]
    working_directory: Path | None
    mock_mode: bool | None
    timeout_seconds: float


@dataclass(slots=True)
class BatchRunCommand:
    """CLI input for running several prompts as one batch."""

    prompts: tuple[str, ...]
    model: str | None
    mock_mode: bool | None
    timeout_seconds: float


@dataclass(slots=True)
class ProbeCommand:
    """CLI input for backend availability check."""

    mock_mode: bool | None


@dataclass(slots=True)
class CommandResult:
    """Lines to render in CLI plus overall outcome."""

    lines: list[str]
    success: bool


class JobCliController:
    """Coordinates job creation, waiting and reporting for CLI commands."""

    def run_prompt(self, command: JobRunCommand) -> CommandResult:
        return asyncio.run(self._run_prompt(command))

    async def _run_prompt(self, command: JobRunCommand) -> CommandResult:
        context = _context(command.mock_mode)
        options: dict[str, object] = {}
        if command.model:
            options["model"] = command.model
        if command.allowed_tools:
            options["allowedTools"] = list(command.allowed_tools)
        if command.disallowed_tools:
            options["disallowedTools"] = list(command.disallowed_tools)
        if command.add_dirs:
            options["addDirs"] = [str(path) for path in command.add_dirs]
        if command.working_directory is not None:
            options["workingDirectory"] = str(command.working_directory)

        try:
            created = await context.jobs.create_job(command.prompt, options)
            job = await _wait_or_terminate(context, created.job_id, command.timeout_seconds)
        finally:
            await context.close()

        if job is None:
            return CommandResult(lines=[f"Job disappeared: {created.job_id}"], success=False)
        return CommandResult(
            lines=[
                "",
                f"Job finished: job_id={job.id} status={job.status.value} "
                f"duration_ms={_duration_ms(job)}",
            ],
            success=job.status == JobStatus.COMPLETED,
        )

    def run_batch(self, command: BatchRunCommand) -> CommandResult:
        return asyncio.run(self._run_batch(command))

    async def _run_batch(self, command: BatchRunCommand) -> CommandResult:
        context = _context(command.mock_mode)
        prompts = validate_batch_prompts(list(command.prompts), context.settings)
        options = {"model": command.model} if command.model else {}
        try:
            batch = await context.batches.create_batch(prompts, options)
            for job_id in batch.job_ids:
                await _wait_or_terminate(context, job_id, command.timeout_seconds)
            report = await context.batches.batch_status(batch.job_ids, include_progress=True)
        finally:
            await context.close()

        summary = report.summary
        lines = [
            f"Batch: batch_id={batch.batch_id} jobs={batch.count}",
            *(
                f"  {row.id} status={row.status.value} duration_ms={row.duration_ms or 0}"
                for row in report.jobs
            ),
            "Summary: "
            + " ".join(f"{status}={count}" for status, count in summary.by_status.items() if count),
            f"Completion rate: {summary.completion_rate:.0%}",
        ]
        return CommandResult(lines=lines, success=summary.completion_rate == 1.0)

    def probe(self, command: ProbeCommand) -> CommandResult:
        return asyncio.run(self._probe(command))

    async def _probe(self, command: ProbeCommand) -> CommandResult:
        context = _context(command.mock_mode)
        available = await context.backend.is_available()
        description = context.backend.describe()
        lines = [
            f"Backend available: {'yes' if available else 'no'}",
            *(f"  {key}={value}" for key, value in description.items()),
        ]
        return CommandResult(lines=lines, success=available)

    def limits(self) -> list[str]:
        context = _context(mock_mode=True)
        return [json.dumps(context.batches.limits(), indent=2)]


def _context(mock_mode: bool | None) -> AppContext:
    return build_context(Settings.from_env(), mock_mode=mock_mode)


async def _wait_or_terminate(context: AppContext, job_id: str, timeout_seconds: float) -> Job | None:
    try:
        return await context.jobs.wait_for_job(job_id, timeout=timeout_seconds)
    except TimeoutError:
        try:
            await context.jobs.terminate_job(job_id)
        except JobError:
            pass
        return await context.jobs.get_job(job_id)


def _duration_ms(job: Job) -> int:
    if job.finished_at is None:
        return 0
    return job.finished_at - job.started_at
