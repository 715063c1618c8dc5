from __future__ import annotations

import os
import signal
import stat
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import allure
import pytest

from cletus.config import ClaudeSettings
from cletus.orchestrator.backend.cli_backend import ClaudeCliBackend, build_run_args
from cletus.orchestrator.errors import ProcessStartError
from cletus.orchestrator.output import extract_assistant_text

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Agent Process Adapter"),
]

posix_only = pytest.mark.skipif(os.name == "nt", reason="shebang launcher needs POSIX")

_FAKE_AGENT = """
import json
import os
import sys
import time

if "--version" in sys.argv:
    print("fake-claude 1.0.0")
    raise SystemExit(0)

prompt = sys.argv[sys.argv.index("-p") + 1]
if prompt == "sleep":
    time.sleep(30)


def emit(text):
    event = {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
    print(json.dumps(event), flush=True)


print(json.dumps({"type": "system", "subtype": "init"}), flush=True)
emit("args=" + " ".join(sys.argv[1:]))
emit("cwd=" + os.getcwd())
emit("headless=" + os.environ.get("CLAUDE_HEADLESS", ""))
emit("extra=" + os.environ.get("CLETUS_TEST_EXTRA", ""))
sys.stderr.write("warning: fake agent\\n")
sys.stderr.flush()
raise SystemExit(3 if prompt == "fail" else 0)
"""


def _write_fake_agent(directory: Path) -> Path:
    path = directory / "claude"
    path.write_text(f"#!{sys.executable}\n{_FAKE_AGENT.lstrip()}", "utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


async def _collect(stream: AsyncIterator[bytes]) -> str:
    return b"".join([chunk async for chunk in stream]).decode()


def test_build_run_args_renders_full_argument_vector() -> None:
    settings = ClaudeSettings(executable="/usr/bin/claude", default_model="claude-default")

    args = build_run_args(
        settings=settings,
        prompt="fix the bug",
        options={
            "model": "claude-custom",
            "allowedTools": ["Read", "Edit"],
            "disallowedTools": ["Bash"],
            "addDirs": ["/srv/a", "/srv/b"],
        },
    )

    assert args == [
        "/usr/bin/claude",
        "--dangerously-skip-permissions",
        "-p",
        "fix the bug",
        "--output-format",
        "stream-json",
        "--model",
        "claude-custom",
        "--verbose",
        "--allowedTools",
        "Read,Edit",
        "--disallowedTools",
        "Bash",
        "--add-dir",
        "/srv/a",
        "--add-dir",
        "/srv/b",
    ]


def test_build_run_args_respects_permission_and_format_settings() -> None:
    settings = ClaudeSettings(skip_permissions=False, output_format="json", verbose=False)

    args = build_run_args(settings=settings, prompt="hi", options={})

    assert args == [
        "claude",
        "-p",
        "hi",
        "--output-format",
        "json",
        "--model",
        settings.default_model,
    ]


@posix_only
@pytest.mark.asyncio
async def test_start_streams_agent_output_and_exit_code(tmp_path: Path) -> None:
    executable = _write_fake_agent(tmp_path)
    workdir = tmp_path / "work"
    workdir.mkdir()
    backend = ClaudeCliBackend(ClaudeSettings(executable=str(executable), headless_mode=True))

    handle = await backend.start(
        "fail",
        {"workingDirectory": str(workdir), "env": {"CLETUS_TEST_EXTRA": "42"}},
    )
    stdout = await _collect(handle.stdout)
    stderr = await _collect(handle.stderr)
    exit_code = await handle.wait()

    texts = [text for text in map(extract_assistant_text, stdout.splitlines()) if text]
    assert texts[0].startswith("args=--dangerously-skip-permissions -p fail --output-format")
    assert texts[1:] == [f"cwd={workdir.resolve()}", "headless=1", "extra=42"]
    assert stderr == "warning: fake agent\n"
    assert exit_code == 3
    assert handle.metadata["pid"] > 0
    assert handle.metadata["prompt"] == "fail"
    assert handle.kill() is False


@posix_only
@pytest.mark.asyncio
async def test_kill_signals_running_process(tmp_path: Path) -> None:
    executable = _write_fake_agent(tmp_path)
    backend = ClaudeCliBackend(ClaudeSettings(executable=str(executable)))

    handle = await backend.start("sleep", {})

    assert handle.kill() is True
    assert await handle.wait() == -int(signal.SIGTERM)
    assert await _collect(handle.stdout) == ""


@pytest.mark.asyncio
async def test_start_with_missing_executable_raises_permanent_error(tmp_path: Path) -> None:
    backend = ClaudeCliBackend(ClaudeSettings(executable=str(tmp_path / "missing-claude")))

    with pytest.raises(ProcessStartError, match="Agent executable not found") as error:
        await backend.start("hi", {})

    assert error.value.transient is False


@posix_only
@pytest.mark.asyncio
async def test_is_available_probes_version(tmp_path: Path) -> None:
    executable = _write_fake_agent(tmp_path)

    assert await ClaudeCliBackend(ClaudeSettings(executable=str(executable))).is_available()
    assert not await ClaudeCliBackend(
        ClaudeSettings(executable=str(tmp_path / "missing-claude")),
    ).is_available()
