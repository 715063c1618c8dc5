"""Runtime configuration for the job orchestrator and its agent backends."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

SUPPORTED_STORAGE_BACKENDS = ("memory", "file", "redis")
SUPPORTED_LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass(slots=True)
class ClaudeSettings:
    """External agent executable settings."""

    executable: str = "claude"
    mock_mode: bool = False
    default_model: str = "claude-sonnet-4-20250514"
    headless_mode: bool = True
    skip_permissions: bool = True
    output_format: str = "stream-json"
    verbose: bool = False


@dataclass(slots=True)
class StorageSettings:
    """Job registry settings."""

    backend: str = "memory"
    max_jobs_in_memory: int = 1_000
    max_output_chunks: int = 1_000


@dataclass(slots=True)
class JobSettings:
    """Job processing and retention settings."""

    max_batch_size: int = 10
    default_timeout_ms: int = 300_000
    enforce_timeout: bool = False
    cleanup_interval_ms: int = 3_600_000
    retention_ms: int = 86_400_000


@dataclass(slots=True)
class LoggingSettings:
    """Log and console mirroring settings."""

    level: str = "info"
    colorize: bool = True
    timestamp: bool = True


@dataclass(slots=True)
class MockSettings:
    """Simulated agent settings."""

    response_delay_ms: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    claude: ClaudeSettings = field(default_factory=ClaudeSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    mock: MockSettings = field(default_factory=MockSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            claude=ClaudeSettings(
                executable=os.getenv("CLAUDE_EXECUTABLE", "claude"),
                mock_mode=_env_bool("CLAUDE_MOCK_MODE", default=False),
                default_model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-20250514"),
                headless_mode=_env_bool("CLAUDE_HEADLESS", default=True),
                skip_permissions=_env_bool("CLAUDE_SKIP_PERMISSIONS", default=True),
                output_format=os.getenv("CLAUDE_OUTPUT_FORMAT", "stream-json"),
                verbose=_env_bool("CLAUDE_VERBOSE", default=False),
            ),
            storage=StorageSettings(
                backend=os.getenv("STORAGE_BACKEND", "memory"),
                max_jobs_in_memory=_env_int("MAX_JOBS_IN_MEMORY", 1_000),
                max_output_chunks=_env_int("MAX_OUTPUT_CHUNKS", 1_000),
            ),
            jobs=JobSettings(
                max_batch_size=_env_int("MAX_BATCH_SIZE", 10),
                default_timeout_ms=_env_int("JOB_TIMEOUT", 300_000),
                enforce_timeout=_env_bool("CLETUS_ENFORCE_JOB_TIMEOUT", default=False),
                cleanup_interval_ms=_env_int("CLEANUP_INTERVAL", 3_600_000),
                retention_ms=_env_int("RETENTION_PERIOD", 86_400_000),
            ),
            logging=LoggingSettings(
                level=os.getenv("LOG_LEVEL", "info").strip().lower(),
                colorize=_env_bool("LOG_COLORIZE", default=True),
                timestamp=_env_bool("LOG_TIMESTAMP", default=True),
            ),
            mock=MockSettings(
                response_delay_ms=_env_int("MOCK_RESPONSE_DELAY", 100),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unsupported or out-of-range values."""

        if self.storage.backend not in SUPPORTED_STORAGE_BACKENDS:
            raise ValueError(f"Invalid storage backend: {self.storage.backend!r}")
        if not self.claude.mock_mode and not self.claude.executable.strip():
            raise ValueError("CLAUDE_EXECUTABLE is required when not in mock mode.")
        if self.logging.level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.logging.level!r}")
        if self.storage.max_jobs_in_memory <= 0:
            raise ValueError("MAX_JOBS_IN_MEMORY must be > 0.")
        if self.storage.max_output_chunks <= 0:
            raise ValueError("MAX_OUTPUT_CHUNKS must be > 0.")
        if self.jobs.max_batch_size <= 0:
            raise ValueError("MAX_BATCH_SIZE must be > 0.")
        if self.jobs.default_timeout_ms <= 0:
            raise ValueError("JOB_TIMEOUT must be > 0.")
        if self.jobs.retention_ms < 0:
            raise ValueError("RETENTION_PERIOD must be >= 0.")
        if self.mock.response_delay_ms < 0:
            raise ValueError("MOCK_RESPONSE_DELAY must be >= 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
