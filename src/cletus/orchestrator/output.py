"""Output pipeline: frame agent byte streams into lines and record extracted text.

The agent prints newline-delimited JSON events. Only ``assistant`` events whose
first content item is text contribute output; see ``extract_assistant_text``.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterator
from typing import Protocol

import rich_click as click

from cletus.orchestrator.backend.base import ProcessHandle
from cletus.orchestrator.colors import hex_to_rgb
from cletus.orchestrator.errors import JobNotFoundError
from cletus.orchestrator.models import ChunkType, OutputChunk, now_ms
from cletus.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

_SHORT_ID_CHARS = 8
_STDERR_TAG = "ERROR:"


def extract_assistant_text(line: str) -> str | None:
    """Return human-readable text from one protocol line.

    Extraction is gated on ``content[0]``: when the first item is not text the
    line yields nothing, even if later items are text. This looks like a latent
    bug but downstream readers may rely on it, so confirm intent before changing.
    Text items following the first are concatenated up to the first non-text item.
    Lines that are not JSON pass through verbatim.
    """

    try:
        parsed = json.loads(line)
    except (ValueError, RecursionError):
        return line

    if not isinstance(parsed, dict) or parsed.get("type") != "assistant":
        return None
    message = parsed.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list) or not content or not _is_text_item(content[0]):
        return None

    parts: list[str] = []
    for item in content:
        if not _is_text_item(item):
            break
        parts.append(str(item.get("text") or ""))
    return "".join(parts)


def _is_text_item(item: object) -> bool:
    return isinstance(item, dict) and item.get("type") == "text"


class LineFramer:
    """Reassemble complete lines from arbitrarily split UTF-8 byte chunks."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        """Return complete non-blank lines; keep the trailing partial line."""

        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    def flush(self) -> str | None:
        """Return leftover buffered text once the stream has ended."""

        remaining = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return remaining if remaining.strip() else None


def format_output_chunk(text: str, chunk_type: ChunkType, job_id: str) -> OutputChunk:
    return OutputChunk(text=text, type=chunk_type, timestamp=now_ms(), job_id=job_id)


def short_job_id(job_id: str) -> str:
    return job_id[-_SHORT_ID_CHARS:]


def add_job_prefix(text: str, job_id: str, tag: str = "") -> str:
    """Prefix every non-empty line with `[<short id>]` and an optional tag."""

    prefix = f"[{short_job_id(job_id)}] {tag} " if tag else f"[{short_job_id(job_id)}] "
    return "\n".join(prefix + line if line else line for line in text.split("\n"))


class OutputSink(Protocol):
    """Console mirror for captured job output."""

    def write(self, text: str, chunk_type: ChunkType, job_id: str, color: str) -> None: ...


class ConsoleSink:
    """Echo job output to the terminal, colored per job."""

    def __init__(self, *, colorize: bool = True) -> None:
        self.colorize = colorize

    def write(self, text: str, chunk_type: ChunkType, job_id: str, color: str) -> None:
        is_stderr = chunk_type != ChunkType.STDOUT
        tag = _STDERR_TAG if chunk_type == ChunkType.STDERR else ""
        rendered = add_job_prefix(text, job_id, tag)
        rgb = hex_to_rgb(color) if self.colorize else None
        if rgb is not None:
            rendered = click.style(rendered, fg=rgb, dim=is_stderr)
        click.echo(rendered, nl=False, err=is_stderr)


class NullSink:
    def write(self, text: str, chunk_type: ChunkType, job_id: str, color: str) -> None:
        return None


class OutputPipeline:
    """Drain a process handle into the job registry and the console sink."""

    def __init__(self, repository: JobRepository, sink: OutputSink | None = None) -> None:
        self.repository = repository
        self.sink = sink or NullSink()

    async def drain(self, job_id: str, handle: ProcessHandle, color: str = "") -> None:
        """Consume stdout and stderr concurrently until both end."""

        await asyncio.gather(
            self._drain_stdout(job_id, handle.stdout, color),
            self._drain_stderr(job_id, handle.stderr, color),
        )

    async def record(self, job_id: str, text: str, chunk_type: ChunkType, color: str = "") -> bool:
        """Store one chunk on both access paths and mirror it to the console.

        Returns False when the job is gone or already terminal; such writes are
        dropped.
        """

        job = await self.repository.get_job(job_id)
        if job is None or job.status.is_terminal:
            return False
        try:
            await self.repository.add_output_chunk(
                job_id,
                format_output_chunk(text, chunk_type, job_id),
            )
            if chunk_type == ChunkType.STDOUT:
                current = await self.repository.get_job(job_id)
                if current is not None:
                    await self.repository.update_job(job_id, progress=current.progress + text)
        except JobNotFoundError:
            logger.debug("Dropped output for deleted job: job_id=%s", job_id)
            return False

        self.sink.write(text, chunk_type, job_id, color)
        return True

    async def _drain_stdout(self, job_id: str, stream: AsyncIterator[bytes], color: str) -> None:
        framer = LineFramer()
        try:
            async for data in stream:
                for line in framer.feed(data):
                    text = extract_assistant_text(line)
                    if text:
                        await self.record(job_id, text + "\n", ChunkType.STDOUT, color)
            remaining = framer.flush()
            if remaining is not None:
                text = extract_assistant_text(remaining)
                if text:
                    await self.record(job_id, text, ChunkType.STDOUT, color)
        except Exception as error:  # noqa: BLE001
            await self._record_stream_error(job_id, "stdout", error, color)

    async def _drain_stderr(self, job_id: str, stream: AsyncIterator[bytes], color: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            async for data in stream:
                text = decoder.decode(data)
                if text:
                    await self.record(job_id, text, ChunkType.STDERR, color)
            tail = decoder.decode(b"", final=True)
            if tail:
                await self.record(job_id, tail, ChunkType.STDERR, color)
        except Exception as error:  # noqa: BLE001
            await self._record_stream_error(job_id, "stderr", error, color)

    async def _record_stream_error(
        self,
        job_id: str,
        stream_name: str,
        error: Exception,
        color: str,
    ) -> None:
        message = f"{stream_name} stream error: {error}"
        logger.error("[%s] %s", short_job_id(job_id), message)
        await self.record(job_id, message, ChunkType.ERROR, color)
