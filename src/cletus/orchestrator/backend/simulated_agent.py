"""Deterministic stand-in for the agent CLI, used in tests and demos."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from cletus.orchestrator.backend.base import ProcessHandle
from cletus.orchestrator.models import now_ms

logger = logging.getLogger(__name__)

_EXIT_GRACE_MS = 100
_PROMPT_PREVIEW_CHARS = 100

SIMULATED_ERROR_TEXT = "Error: Something went wrong\n"
SIMULATED_SUCCESS_TEXT = "Task completed successfully!"
LONG_SCRIPT_STEPS = 10


@dataclass(slots=True, frozen=True)
class SimulatedScript:
    """Canned agent run: stdout events, raw stderr chunks and exit code."""

    name: str
    chunks: tuple[str, ...]
    error_chunks: tuple[str, ...] = ()
    exit_code: int = 0
    delay_ms: int | None = None


def assistant_event(text: str) -> str:
    """One stream-json line as the agent prints it."""

    payload = {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
    return json.dumps(payload) + "\n"


DEFAULT_SCRIPT = SimulatedScript(
    name="default",
    chunks=(
        assistant_event("This is a mock response from Claude.\n"),
        assistant_event("Processing your request...\n"),
        assistant_event(SIMULATED_SUCCESS_TEXT),
    ),
)
ERROR_SCRIPT = SimulatedScript(
    name="error",
    chunks=(assistant_event("Starting task...\n"),),
    error_chunks=(SIMULATED_ERROR_TEXT,),
    exit_code=1,
)
LONG_SCRIPT = SimulatedScript(
    name="long",
    chunks=(
        *(
            assistant_event(f"Processing step {step}/{LONG_SCRIPT_STEPS}...\n")
            for step in range(1, LONG_SCRIPT_STEPS + 1)
        ),
        assistant_event(SIMULATED_SUCCESS_TEXT),
    ),
    delay_ms=50,
)


def select_script(prompt: str | None) -> SimulatedScript:
    """Pick a canned script by prompt keywords."""

    if not prompt:
        return DEFAULT_SCRIPT
    lowered = prompt.lower()
    if "error" in lowered or "fail" in lowered:
        return ERROR_SCRIPT
    if "long" in lowered or "complex" in lowered:
        return LONG_SCRIPT
    return DEFAULT_SCRIPT


class SimulatedAgentBackend:
    """Replay canned scripts as delayed byte streams with a scripted exit code."""

    def __init__(self, *, response_delay_ms: int = 100, default_model: str = "") -> None:
        self.response_delay_ms = response_delay_ms
        self.default_model = default_model

    async def start(self, prompt: str, options: dict[str, Any]) -> ProcessHandle:
        script = select_script(prompt)
        delay_ms = script.delay_ms if script.delay_ms is not None else self.response_delay_ms
        killed = asyncio.Event()
        loop = asyncio.get_running_loop()
        exited: asyncio.Future[int] = loop.create_future()

        total_ms = (len(script.chunks) + len(script.error_chunks)) * delay_ms + _EXIT_GRACE_MS
        timer = loop.call_later(total_ms / 1000, _resolve, exited, script.exit_code)

        def kill(sig: int = signal.SIGTERM) -> bool:
            if exited.done():
                return False
            logger.debug("Simulated process killed with signal %s", sig)
            timer.cancel()
            killed.set()
            exited.set_result(-int(sig))
            return True

        return ProcessHandle(
            stdout=_replay(script.chunks, delay_ms, killed),
            stderr=_replay(script.error_chunks, delay_ms, killed),
            exited=exited,
            kill=kill,
            metadata={
                "model": options.get("model") or self.default_model,
                "started_at": now_ms(),
                "prompt": (prompt or "")[:_PROMPT_PREVIEW_CHARS],
                "mock": True,
                "script": script.name,
            },
        )

    async def is_available(self) -> bool:
        return True

    def describe(self) -> dict[str, Any]:
        return {"executable": "mock", "defaultModel": self.default_model, "mockMode": True}


async def _replay(
    chunks: tuple[str, ...],
    delay_ms: int,
    killed: asyncio.Event,
) -> AsyncIterator[bytes]:
    for chunk in chunks:
        await asyncio.sleep(delay_ms / 1000)
        if killed.is_set():
            return
        yield chunk.encode("utf-8")


def _resolve(future: asyncio.Future[int], exit_code: int) -> None:
    if not future.done():
        future.set_result(exit_code)
