"""Agent process backend implementations."""

from cletus.config import Settings
from cletus.orchestrator.backend.base import AgentBackend, ProcessHandle
from cletus.orchestrator.backend.cli_backend import ClaudeCliBackend
from cletus.orchestrator.backend.simulated_agent import SimulatedAgentBackend


def create_backend(settings: Settings, *, mock_mode: bool | None = None) -> AgentBackend:
    """Select the real or simulated backend; `mock_mode` overrides settings."""

    use_mock = settings.claude.mock_mode if mock_mode is None else mock_mode
    if use_mock:
        return SimulatedAgentBackend(
            response_delay_ms=settings.mock.response_delay_ms,
            default_model=settings.claude.default_model,
        )
    return ClaudeCliBackend(settings.claude)


__all__ = [
    "AgentBackend",
    "ClaudeCliBackend",
    "ProcessHandle",
    "SimulatedAgentBackend",
    "create_backend",
]
