"""Backend interface for starting agent processes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class ProcessHandle:
    """Uniform view of one running agent process, real or simulated."""

    stdout: AsyncIterator[bytes]
    stderr: AsyncIterator[bytes]
    exited: asyncio.Future[int]
    kill: Callable[..., bool]
    metadata: dict[str, Any] = field(default_factory=dict)

    async def wait(self) -> int:
        """Wait for the exit code; cancelling the waiter leaves `exited` pending."""

        return await asyncio.shield(self.exited)


class AgentBackend(Protocol):
    """Protocol implemented by agent process adapters."""

    async def start(self, prompt: str, options: dict[str, Any]) -> ProcessHandle:
        """Launch one unit of work and return its streaming handle."""

    async def is_available(self) -> bool:
        """Cheap liveness probe."""

    def describe(self) -> dict[str, Any]:
        """Public, non-sensitive backend configuration."""
