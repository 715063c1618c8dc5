from __future__ import annotations

import json

import allure
import pytest
from click.testing import CliRunner

from cletus import __version__
from cletus.main import cletus

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def cli_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_MOCK_MODE", "true")
    monkeypatch.setenv("MOCK_RESPONSE_DELAY", "5")
    monkeypatch.setenv("LOG_COLORIZE", "false")
    monkeypatch.setenv("LOG_LEVEL", "error")
    monkeypatch.delenv("MAX_BATCH_SIZE", raising=False)
    monkeypatch.delenv("CLAUDE_EXECUTABLE", raising=False)
    monkeypatch.delenv("STORAGE_BACKEND", raising=False)


def test_version_option() -> None:
    result = CliRunner().invoke(cletus, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_run_streams_job_output_until_completion() -> None:
    result = CliRunner().invoke(cletus, ["run", "say hi"])

    assert result.exit_code == 0, result.output
    assert "] Task completed successfully!" in result.output
    assert "status=completed" in result.output


def test_run_exits_non_zero_when_job_fails() -> None:
    result = CliRunner().invoke(cletus, ["run", "please fail", "--mock"])

    assert result.exit_code == 1
    assert "status=failed" in result.output
    assert "Job did not complete successfully." in result.output


def test_run_terminates_job_after_timeout() -> None:
    result = CliRunner().invoke(cletus, ["run", "a long task", "--timeout-seconds", "0.2"])

    assert result.exit_code == 1
    assert "status=terminated" in result.output


def test_batch_prints_summary() -> None:
    result = CliRunner().invoke(cletus, ["batch", "say hi", "say bye"])

    assert result.exit_code == 0, result.output
    assert "jobs=2" in result.output
    assert "completed=2" in result.output
    assert "Completion rate: 100%" in result.output


def test_batch_rejects_too_many_prompts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_BATCH_SIZE", "1")

    result = CliRunner().invoke(cletus, ["batch", "one", "two"])

    assert result.exit_code == 1
    assert "Maximum 1 prompts allowed per batch" in result.output


def test_probe_reports_simulated_backend() -> None:
    result = CliRunner().invoke(cletus, ["probe"])

    assert result.exit_code == 0
    assert "Backend available: yes" in result.output
    assert "executable=mock" in result.output


def test_probe_real_backend_with_missing_executable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDE_EXECUTABLE", "/nonexistent/claude")

    result = CliRunner().invoke(cletus, ["probe", "--real"])

    assert result.exit_code == 1
    assert "Backend available: no" in result.output
    assert "Agent backend is not available." in result.output


def test_limits_prints_json() -> None:
    result = CliRunner().invoke(cletus, ["limits"])

    assert result.exit_code == 0
    assert json.loads(result.output)["maxBatchSize"] == 10


def test_invalid_environment_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "loud")

    result = CliRunner().invoke(cletus, ["limits"])

    assert result.exit_code == 1
    assert "Invalid log level" in result.output


@pytest.mark.parametrize(
    "args",
    [["run", "say hi"], ["batch", "say hi"], ["probe"], ["limits"]],
)
@pytest.mark.parametrize("backend", ["file", "redis"])
def test_unimplemented_storage_backend_is_reported(
    monkeypatch: pytest.MonkeyPatch,
    backend: str,
    args: list[str],
) -> None:
    monkeypatch.setenv("STORAGE_BACKEND", backend)

    result = CliRunner().invoke(cletus, args)

    assert result.exit_code == 1
    assert f"{backend} storage is not implemented" in result.output
    assert not isinstance(result.exception, NotImplementedError)
