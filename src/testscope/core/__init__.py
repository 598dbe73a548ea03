"""Core module exports."""

from testscope.core.errors import (
    CaptureError,
    ConfigError,
    ErrorCode,
    InternalError,
    TestScopeError,
)
from testscope.core.logging import (
    configure_logging,
    get_logger,
    get_session_id,
    session_context,
)
from testscope.core.progress import live_status, status

__all__ = [
    # Errors
    "CaptureError",
    "ConfigError",
    "ErrorCode",
    "InternalError",
    "TestScopeError",
    # Logging
    "configure_logging",
    "get_logger",
    "get_session_id",
    "session_context",
    # Progress
    "live_status",
    "status",
]
