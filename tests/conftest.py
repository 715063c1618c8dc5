"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import AsyncIterator, Iterable

import pytest
import pytest_asyncio

from cletus.config import ClaudeSettings, LoggingSettings, MockSettings, Settings
from cletus.context import AppContext, build_context
from cletus.orchestrator.backend.base import ProcessHandle
from cletus.orchestrator.models import Job, JobStatus
from cletus.orchestrator.repository import InMemoryJobRepository
from cletus.orchestrator.service import JobService


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        claude=ClaudeSettings(mock_mode=True),
        logging=LoggingSettings(colorize=False),
        mock=MockSettings(response_delay_ms=5),
    )


@pytest.fixture()
def repository(settings: Settings) -> InMemoryJobRepository:
    return InMemoryJobRepository(
        max_jobs=settings.storage.max_jobs_in_memory,
        max_output_chunks=settings.storage.max_output_chunks,
    )


@pytest_asyncio.fixture()
async def context(settings: Settings) -> AsyncIterator[AppContext]:
    """Mock-mode application context, closed after the test."""

    app = build_context(settings, mock_mode=True, echo_output=False)
    yield app
    await app.close()


class ControlledProcess:
    """Process stand-in whose output and exit are driven by the test."""

    def __init__(self) -> None:
        self.stdout: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.stderr: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self.kill_result = True
        self.kill_error: Exception | None = None
        self.signals: list[int] = []

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        if self.kill_error is not None:
            raise self.kill_error
        self.signals.append(sig)
        if not self.kill_result:
            return False
        self.finish(-int(sig))
        return True

    def emit(self, data: bytes, *, stderr: bool = False) -> None:
        (self.stderr if stderr else self.stdout).put_nowait(data)

    def finish(self, exit_code: int) -> None:
        self.stdout.put_nowait(None)
        self.stderr.put_nowait(None)
        if not self.exited.done():
            self.exited.set_result(exit_code)

    def handle(self) -> ProcessHandle:
        return ProcessHandle(
            stdout=_read_queue(self.stdout),
            stderr=_read_queue(self.stderr),
            exited=self.exited,
            kill=self.kill,
        )


async def _read_queue(queue: asyncio.Queue[bytes | None]) -> AsyncIterator[bytes]:
    while True:
        item = await queue.get()
        if item is None:
            return
        yield item


class ControlledBackend:
    """Backend that hands out ControlledProcess handles."""

    def __init__(self) -> None:
        self.processes: list[ControlledProcess] = []
        self.start_error: Exception | None = None

    async def start(self, prompt: str, options: dict) -> ProcessHandle:
        if self.start_error is not None:
            raise self.start_error
        process = ControlledProcess()
        self.processes.append(process)
        return process.handle()

    async def is_available(self) -> bool:
        return True

    def describe(self) -> dict:
        return {"executable": "controlled", "mockMode": True}


@pytest.fixture()
def controlled_backend() -> ControlledBackend:
    return ControlledBackend()


@pytest_asyncio.fixture()
async def controlled_service(
    settings: Settings,
    repository: InMemoryJobRepository,
    controlled_backend: ControlledBackend,
) -> AsyncIterator[JobService]:
    service = JobService(repository=repository, backend=controlled_backend, settings=settings)
    yield service
    for process in controlled_backend.processes:
        process.finish(0)
    await service.shutdown(timeout=2)


async def wait_for_status(
    service: JobService,
    job_id: str,
    statuses: Iterable[JobStatus],
    timeout: float = 3.0,
) -> Job:
    """Poll until the job reaches one of `statuses`."""

    wanted = set(statuses)

    async def _poll() -> Job:
        while True:
            job = await service.get_job(job_id)
            if job is not None and job.status in wanted:
                return job
            await asyncio.sleep(0.005)

    return await asyncio.wait_for(_poll(), timeout=timeout)


async def wait_for_active_process(service: JobService, job_id: str, timeout: float = 3.0) -> None:
    async def _poll() -> None:
        while not service.has_active_process(job_id):
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)
