"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (TESTSCOPE__SECTION__KEY)
3. Repo YAML (.testscope/config.yaml)
4. Global YAML (~/.config/testscope/config.yaml)
5. Built-in defaults (this file)

Examples:
    TESTSCOPE__LOGGING__LEVEL=DEBUG
    TESTSCOPE__RUNNER__DEFAULT_TIMEOUT_SEC=600
    TESTSCOPE__REPORT__SLOW_TEST_THRESHOLD_SEC=2.5
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        TESTSCOPE__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="WARNING",
        description="Root log level. DEBUG logs every process lifecycle step; "
        "the CLI -v flag forces DEBUG.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class RunnerConfig(BaseModel):
    """Process supervision configuration.

    Env vars:
        TESTSCOPE__RUNNER__DEFAULT_TIMEOUT_SEC: Timeout when a request has none
        TESTSCOPE__RUNNER__GRACE_PERIOD_SEC: Wait between terminate and kill
        TESTSCOPE__RUNNER__READ_CHUNK_SIZE: Bytes per pipe read
        TESTSCOPE__RUNNER__DRAIN_TIMEOUT_SEC: Max wait for pipes to close after exit
    """

    default_timeout_sec: float = Field(
        default=300.0,
        description="Default test timeout (5 min). "
        "RISK: Too low may kill slow integration suites.",
    )
    grace_period_sec: float = Field(
        default=5.0,
        description="Grace window between terminate and force-kill.",
    )
    read_chunk_size: int = Field(
        default=4096,
        description="Bytes read from each pipe per chunk.",
    )
    drain_timeout_sec: float = Field(
        default=2.0,
        description="How long to keep reading pipes after the process exited. "
        "Grandchildren that inherit the pipes can keep them open indefinitely.",
    )

    @field_validator("default_timeout_sec", "grace_period_sec", "drain_timeout_sec")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Must be positive, got {v}")
        return v

    @field_validator("read_chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Chunk size must be at least 1, got {v}")
        return v


class ReportConfig(BaseModel):
    """Diagnostic report configuration.

    Env vars:
        TESTSCOPE__REPORT__SLOW_TEST_THRESHOLD_SEC: Per-test slowness callout threshold
        TESTSCOPE__REPORT__MAX_MESSAGE_LINES: Lines kept per failure message
        TESTSCOPE__REPORT__MAX_FAILURES: Failures rendered before truncation
        TESTSCOPE__REPORT__RAW_EXCERPT_LINES: Tail lines kept as raw excerpt
    """

    slow_test_threshold_sec: float = Field(
        default=1.0,
        description="Tests or files slower than this are called out individually.",
    )
    max_message_lines: int = Field(
        default=3,
        description="Failure message lines kept in the report.",
    )
    max_failures: int = Field(
        default=50,
        description="Failures rendered before an '... and N more' line.",
    )
    raw_excerpt_lines: int = Field(
        default=20,
        description="Tail lines of raw output shown when no failure detail was parsed.",
    )


class TestScopeConfig(BaseModel):
    """Root configuration for testscope."""

    __test__ = False

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
