"""Process-wide service wiring, built once and passed to consumers."""

from __future__ import annotations

from dataclasses import dataclass

from cletus.config import Settings
from cletus.orchestrator.backend import AgentBackend, create_backend
from cletus.orchestrator.batch import BatchCoordinator
from cletus.orchestrator.output import ConsoleSink, NullSink, OutputSink
from cletus.orchestrator.repository import JobRepository, create_repository
from cletus.orchestrator.service import JobService


@dataclass(slots=True)
class AppContext:
    """Everything an outer surface (CLI, HTTP) needs to drive jobs."""

    settings: Settings
    repository: JobRepository
    backend: AgentBackend
    jobs: JobService
    batches: BatchCoordinator

    async def close(self) -> None:
        await self.jobs.shutdown()


def build_context(
    settings: Settings | None = None,
    *,
    mock_mode: bool | None = None,
    repository: JobRepository | None = None,
    backend: AgentBackend | None = None,
    sink: OutputSink | None = None,
    echo_output: bool = True,
) -> AppContext:
    """Construct a fresh context; tests call this per case instead of resetting globals."""

    settings = settings or Settings.from_env()
    settings.validate()
    repository = repository or create_repository(settings)
    backend = backend or create_backend(settings, mock_mode=mock_mode)
    if sink is None:
        sink = ConsoleSink(colorize=settings.logging.colorize) if echo_output else NullSink()
    jobs = JobService(repository=repository, backend=backend, settings=settings, sink=sink)
    return AppContext(
        settings=settings,
        repository=repository,
        backend=backend,
        jobs=jobs,
        batches=BatchCoordinator(jobs, settings),
    )
