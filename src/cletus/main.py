"""CLI entrypoint for cletus."""

import logging
from pathlib import Path

import rich_click as click

from cletus import __version__
from cletus.config import LoggingSettings, Settings
from cletus.orchestrator.controllers import (
    BatchRunCommand,
    JobCliController,
    JobRunCommand,
    ProbeCommand,
)
from cletus.orchestrator.errors import BatchCreateError, JobError

click.rich_click.USE_MARKDOWN = True
JOB_CONTROLLER = JobCliController()

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@click.group()
@click.version_option(version=__version__, prog_name="cletus")
def cletus() -> None:
    """Run prompts through the Claude CLI as tracked background jobs."""

    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    configure_logging(settings.logging)


_mock_option = click.option(
    "--mock/--real",
    "mock_mode",
    default=None,
    help="Force the simulated agent or the real CLI; defaults to CLAUDE_MOCK_MODE.",
)


@cletus.command("run")
@click.argument("prompt")
@click.option("--model", default=None, help="Model id override; defaults to CLAUDE_MODEL.")
@click.option(
    "--allowed-tool",
    "allowed_tools",
    multiple=True,
    help="Tool the agent may use. Can be repeated.",
)
@click.option(
    "--disallowed-tool",
    "disallowed_tools",
    multiple=True,
    help="Tool the agent must not use. Can be repeated.",
)
@click.option(
    "--add-dir",
    "add_dirs",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Extra directory the agent may access. Can be repeated.",
)
@click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for the agent process.",
)
@_mock_option
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0.1),
    default=600.0,
    show_default=True,
    help="Terminate the job when it runs longer than this.",
)
def run(  # noqa: PLR0913
    prompt: str,
    model: str | None,
    allowed_tools: tuple[str, ...],
    disallowed_tools: tuple[str, ...],
    add_dirs: tuple[Path, ...],
    working_dir: Path | None,
    mock_mode: bool | None,
    timeout_seconds: float,
) -> None:
    """Run one prompt and stream its output until it finishes."""

    try:
        result = JOB_CONTROLLER.run_prompt(
            JobRunCommand(
                prompt=prompt,
                model=model,
                allowed_tools=allowed_tools,
                disallowed_tools=disallowed_tools,
                add_dirs=add_dirs,
                working_directory=working_dir,
                mock_mode=mock_mode,
                timeout_seconds=timeout_seconds,
            ),
        )
    except (JobError, NotImplementedError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Job did not complete successfully.")


@cletus.command("batch")
@click.argument("prompts", nargs=-1, required=True)
@click.option("--model", default=None, help="Model id override for every job.")
@_mock_option
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0.1),
    default=600.0,
    show_default=True,
    help="Per-job wait limit before the job is terminated.",
)
def batch(
    prompts: tuple[str, ...],
    model: str | None,
    mock_mode: bool | None,
    timeout_seconds: float,
) -> None:
    """Run several prompts concurrently and print a status summary."""

    try:
        result = JOB_CONTROLLER.run_batch(
            BatchRunCommand(
                prompts=prompts,
                model=model,
                mock_mode=mock_mode,
                timeout_seconds=timeout_seconds,
            ),
        )
    except BatchCreateError as error:
        started = ", ".join(error.job_ids) or "none"
        raise click.ClickException(f"{error} (already started: {started})") from error
    except (JobError, ValueError, NotImplementedError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Not every job in the batch completed.")


@cletus.command("probe")
@_mock_option
def probe(mock_mode: bool | None) -> None:
    """Check that the agent executable is installed and show its configuration."""

    try:
        result = JOB_CONTROLLER.probe(ProbeCommand(mock_mode=mock_mode))
    except NotImplementedError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent backend is not available.")


@cletus.command("limits")
def limits() -> None:
    """Show batch limits and job timing settings."""

    try:
        lines = JOB_CONTROLLER.limits()
    except NotImplementedError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def configure_logging(settings: LoggingSettings) -> None:
    """Configure root logging from settings; job output itself goes through click."""

    fmt = "%(levelname)s %(name)s: %(message)s"
    if settings.timestamp:
        fmt = "%(asctime)s " + fmt
    logging.basicConfig(level=_LOG_LEVELS[settings.level], format=fmt)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cletus()
