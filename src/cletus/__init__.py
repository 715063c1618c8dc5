"""Job orchestration for agentic CLI prompts."""

__version__ = "0.1.0"
