"""testscope error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 7xxx: Capture (sessions, process lifecycle)
- 9xxx: Internal

Only lifecycle misuse raises. Test-runner output, however malformed, never
does; it degrades to an under-informative result instead.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_FILE_NOT_FOUND = 2004

    # Capture (7xxx)
    SESSION_NOT_FOUND = 7001
    INVALID_TRANSITION = 7002
    CAPTURE_FROZEN = 7003
    SESSION_NOT_FINALIZED = 7004

    # Internal (9xxx)
    INTERNAL_ERROR = 9001


@dataclass(frozen=True, slots=True)
class TestScopeError(Exception):
    """Base error with structured context."""

    __test__ = False

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'SESSION_NOT_FOUND')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(TestScopeError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def file_not_found(cls, path: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_FILE_NOT_FOUND,
            message=f"Config file not found: {path}",
            details={"path": path},
        )


class CaptureError(TestScopeError):
    """Session and capture lifecycle errors."""

    @classmethod
    def session_not_found(cls, session_id: str) -> "CaptureError":
        return cls(
            code=ErrorCode.SESSION_NOT_FOUND,
            message=f"No capture session with id '{session_id}'",
            details={"session_id": session_id},
        )

    @classmethod
    def invalid_transition(cls, session_id: str, current: str, requested: str) -> "CaptureError":
        return cls(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Session '{session_id}' cannot move from {current} to {requested}",
            details={"session_id": session_id, "current": current, "requested": requested},
        )

    @classmethod
    def capture_frozen(cls, stream: str) -> "CaptureError":
        return cls(
            code=ErrorCode.CAPTURE_FROZEN,
            message=f"Capture is frozen; cannot append to {stream}",
            details={"stream": stream},
        )

    @classmethod
    def not_finalized(cls, session_id: str, state: str) -> "CaptureError":
        return cls(
            code=ErrorCode.SESSION_NOT_FINALIZED,
            message=f"Session '{session_id}' is {state}; only finalized sessions have a report",
            details={"session_id": session_id, "state": state},
        )


class InternalError(TestScopeError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
