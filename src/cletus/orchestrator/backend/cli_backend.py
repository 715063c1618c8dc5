"""Subprocess-based backend for the claude CLI agent."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator
from typing import Any

from cletus.config import ClaudeSettings
from cletus.orchestrator.backend.base import ProcessHandle
from cletus.orchestrator.errors import ProcessStartError
from cletus.orchestrator.models import now_ms

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_PROMPT_PREVIEW_CHARS = 100


class ClaudeCliBackend:
    """Launch the agent executable in print mode with streamed JSON output."""

    def __init__(self, settings: ClaudeSettings) -> None:
        self.settings = settings

    async def start(self, prompt: str, options: dict[str, Any]) -> ProcessHandle:
        model = options.get("model") or self.settings.default_model
        run_args = build_run_args(settings=self.settings, prompt=prompt, options=options)

        env = os.environ.copy()
        env["CLAUDE_HEADLESS"] = "1" if self.settings.headless_mode else "0"
        env.update({str(key): str(value) for key, value in (options.get("env") or {}).items()})

        try:
            process = await asyncio.create_subprocess_exec(
                *run_args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.get("workingDirectory") or None,
                env=env,
            )
        except FileNotFoundError as error:
            raise ProcessStartError(
                f"Agent executable not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProcessStartError(
                f"Agent process failed to start: {error}",
                transient=True,
            ) from error

        logger.debug("Agent process started: pid=%s model=%s", process.pid, model)

        def kill(sig: int = signal.SIGTERM) -> bool:
            if process.returncode is not None:
                return False
            process.send_signal(sig)
            return True

        return ProcessHandle(
            stdout=_iter_stream(process.stdout),
            stderr=_iter_stream(process.stderr),
            exited=asyncio.ensure_future(process.wait()),
            kill=kill,
            metadata={
                "model": model,
                "started_at": now_ms(),
                "prompt": (prompt or "")[:_PROMPT_PREVIEW_CHARS],
                "pid": process.pid,
            },
        )

    async def is_available(self) -> bool:
        """Run `<executable> --version` and report whether it exits cleanly."""

        try:
            process = await asyncio.create_subprocess_exec(
                self.settings.executable,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError:
            return False
        await process.communicate()
        return process.returncode == 0

    def describe(self) -> dict[str, Any]:
        return {
            "executable": self.settings.executable,
            "defaultModel": self.settings.default_model,
            "mockMode": False,
        }


def build_run_args(
    *,
    settings: ClaudeSettings,
    prompt: str,
    options: dict[str, Any],
) -> list[str]:
    """Render the agent argument vector for one prompt."""

    model = options.get("model") or settings.default_model
    args = [settings.executable]
    if settings.skip_permissions:
        args.append("--dangerously-skip-permissions")
    args.extend(["-p", prompt, "--output-format", settings.output_format, "--model", model])
    if settings.verbose or settings.output_format == "stream-json":
        args.append("--verbose")
    args.extend(build_option_args(options))
    return args


def build_option_args(options: dict[str, Any]) -> list[str]:
    """Translate per-job tool and directory options into CLI flags."""

    args: list[str] = []
    allowed_tools = options.get("allowedTools") or []
    if allowed_tools:
        args.extend(["--allowedTools", ",".join(allowed_tools)])
    disallowed_tools = options.get("disallowedTools") or []
    if disallowed_tools:
        args.extend(["--disallowedTools", ",".join(disallowed_tools)])
    for directory in options.get("addDirs") or []:
        args.extend(["--add-dir", str(directory)])
    return args


async def _iter_stream(reader: asyncio.StreamReader | None) -> AsyncIterator[bytes]:
    if reader is None:
        return
    while True:
        chunk = await reader.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        yield chunk
