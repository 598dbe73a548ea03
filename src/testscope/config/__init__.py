"""Config module exports."""

from testscope.config.loader import load_config
from testscope.config.models import (
    LoggingConfig,
    LogOutputConfig,
    ReportConfig,
    RunnerConfig,
    TestScopeConfig,
)

__all__ = [
    "load_config",
    "LoggingConfig",
    "LogOutputConfig",
    "ReportConfig",
    "RunnerConfig",
    "TestScopeConfig",
]
