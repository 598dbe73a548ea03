"""Capture subsystem core models.

Canonical data structures for one test run: the request, the raw capture,
the classified result and the diagnostic report. Results and reports are
immutable; only RawCapture is mutable, and only until it is frozen.
"""

from __future__ import annotations

import asyncio
import re
import shlex
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from testscope.core.errors import CaptureError

# =============================================================================
# Enums
# =============================================================================


class FailureKind(str, Enum):
    """What went wrong, per failure record."""

    COMPILATION_ERROR = "CompilationError"
    RUNTIME_ERROR = "RuntimeError"
    ASSERTION_FAILURE = "AssertionFailure"
    SUITE_SETUP_FAILURE = "SuiteSetupFailure"
    TIMEOUT_ERROR = "TimeoutError"
    SPAWN_ERROR = "SpawnError"


class RunOutcome(str, Enum):
    """How the supervised process ended."""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SPAWN_FAILED = "spawn_failed"


class SessionState(str, Enum):
    """Capture session lifecycle.

    idle -> running -> {completed | timed_out | cancelled | spawn_failed} -> finalized
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SPAWN_FAILED = "spawn_failed"
    FINALIZED = "finalized"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @classmethod
    def from_outcome(cls, outcome: RunOutcome) -> SessionState:
        return cls(outcome.value)


_TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.TIMED_OUT,
        SessionState.CANCELLED,
        SessionState.SPAWN_FAILED,
    }
)

# =============================================================================
# Request
# =============================================================================


@dataclass
class TestRunRequest:
    """One invocation of a test command for a target."""

    __test__ = False

    argv: list[str]
    cwd: Path
    target: str  # Concurrency key: at most one active run per target
    timeout_sec: float | None = None  # None -> RunnerConfig.default_timeout_sec
    cancel_event: asyncio.Event | None = None
    env: dict[str, str] | None = None  # Merged over os.environ

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)


# =============================================================================
# Raw Capture
# =============================================================================

StreamName = Literal["stdout", "stderr"]


@dataclass
class RawCapture:
    """Accumulated, normalized output of one process.

    The combined view interleaves complete lines only, so a partial stdout
    line is never spliced with a stderr fragment.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: float = 0.0
    frozen: bool = False
    _combined: list[str] = field(default_factory=list, repr=False)
    _partial: dict[str, str] = field(
        default_factory=lambda: {"stdout": "", "stderr": ""}, repr=False
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def append(self, stream: StreamName, text: str) -> list[str]:
        """Append normalized text; return the lines it completed."""
        with self._lock:
            if self.frozen:
                raise CaptureError.capture_frozen(stream)
            if not text:
                return []
            if stream == "stdout":
                self.stdout += text
            else:
                self.stderr += text
            pending = self._partial[stream] + text
            *complete, rest = pending.split("\n")
            self._partial[stream] = rest
            self._combined.extend(line + "\n" for line in complete)
            return complete

    def freeze(
        self,
        *,
        exit_code: int | None,
        ended_at: datetime | None,
        duration_seconds: float,
    ) -> None:
        """Flush partial lines into the combined view and stop accepting text."""
        with self._lock:
            if self.frozen:
                return
            tails = [self._partial[s] for s in ("stdout", "stderr") if self._partial[s]]
            if tails:
                # Unterminated tails of both streams stay separate lines
                self._combined.append("\n".join(tails))
            self._partial = {"stdout": "", "stderr": ""}
            self.exit_code = exit_code
            self.ended_at = ended_at
            self.duration_seconds = duration_seconds
            self.frozen = True

    @property
    def combined(self) -> str:
        with self._lock:
            text = "".join(self._combined)
            tails = [self._partial[s] for s in ("stdout", "stderr") if self._partial[s]]
        if tails:
            text += "\n".join(tails)
        return text


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class SourceLocation:
    """A file and optional line inside the code under test."""

    file: str
    line: int | None = None

    def __str__(self) -> str:
        return f"{self.file}:{self.line}" if self.line is not None else self.file


@dataclass(frozen=True)
class FailureRecord:
    """A single failure extracted from a run."""

    kind: FailureKind
    message: str
    test_name: str | None = None
    suite_name: str | None = None
    location: SourceLocation | None = None

    @property
    def display_name(self) -> str:
        if self.suite_name and self.test_name:
            return f"{self.suite_name} › {self.test_name}"
        return self.test_name or self.suite_name or self.kind.value

    @property
    def is_test_level(self) -> bool:
        return self.kind in (FailureKind.ASSERTION_FAILURE, FailureKind.RUNTIME_ERROR)


@dataclass(frozen=True)
class TestStatistics:
    """Summary counters. None means the runner never reported the value."""

    __test__ = False

    suites_passed: int | None = None
    suites_failed: int | None = None
    suites_total: int | None = None
    tests_passed: int | None = None
    tests_failed: int | None = None
    tests_skipped: int | None = None
    tests_total: int | None = None
    elapsed_seconds: float | None = None

    @property
    def is_ambiguous(self) -> bool:
        """True when no counter at all could be located in the output."""
        return all(
            value is None
            for value in (
                self.suites_passed,
                self.suites_failed,
                self.suites_total,
                self.tests_passed,
                self.tests_failed,
                self.tests_skipped,
                self.tests_total,
            )
        )


@dataclass(frozen=True)
class TestTiming:
    """Duration of one test or one test file, as printed by the runner."""

    __test__ = False

    name: str
    seconds: float
    scope: Literal["test", "file"] = "test"


@dataclass(frozen=True)
class TestResult:
    """Classified result of one run. Derived exactly once per capture."""

    __test__ = False

    target: str
    success: bool
    statistics: TestStatistics
    failures: tuple[FailureRecord, ...] = ()
    raw_output: str = ""
    exit_code: int | None = None
    duration_seconds: float = 0.0
    outcome: RunOutcome = RunOutcome.COMPLETED
    collapse_detected: bool = False
    timings: tuple[TestTiming, ...] = ()
    suite_results: tuple[tuple[str, str], ...] = ()  # ("PASS" | "FAIL", file)
    dialects: tuple[str, ...] = ()

    @property
    def failure_kinds(self) -> frozenset[FailureKind]:
        return frozenset(f.kind for f in self.failures)

    def has_kind(self, *kinds: FailureKind) -> bool:
        return any(f.kind in kinds for f in self.failures)

    def rerun_patterns(self) -> list[str]:
        """Name patterns that select the failed tests again (jest -t, pytest -k style)."""
        patterns: list[str] = []
        for failure in self.failures:
            if not failure.test_name or not failure.is_test_level:
                continue
            escaped = re.escape(failure.test_name)
            pattern = (
                f"{re.escape(failure.suite_name)}.*{escaped}" if failure.suite_name else escaped
            )
            if pattern not in patterns:
                patterns.append(pattern)
        return patterns

    def one_line_summary(self) -> str:
        """Status banner, e.g. ``FAILED app-a: 2 failed, 5 passed (3.1s)``."""
        stats = self.statistics
        parts: list[str] = []
        if stats.tests_failed:
            parts.append(f"{stats.tests_failed} failed")
        if stats.tests_passed:
            parts.append(f"{stats.tests_passed} passed")
        if stats.tests_skipped:
            parts.append(f"{stats.tests_skipped} skipped")
        if not parts:
            parts.append("no test counts" if stats.tests_total is None else f"{stats.tests_total} total")
        elapsed = stats.elapsed_seconds if stats.elapsed_seconds is not None else self.duration_seconds
        status = "PASSED" if self.success else "FAILED"
        return f"{status} {self.target}: {', '.join(parts)} ({elapsed:.1f}s)"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output. Raw output is omitted."""
        stats = self.statistics
        return {
            "target": self.target,
            "success": self.success,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
            "collapse_detected": self.collapse_detected,
            "dialects": list(self.dialects),
            "statistics": {
                "suites_passed": stats.suites_passed,
                "suites_failed": stats.suites_failed,
                "suites_total": stats.suites_total,
                "tests_passed": stats.tests_passed,
                "tests_failed": stats.tests_failed,
                "tests_skipped": stats.tests_skipped,
                "tests_total": stats.tests_total,
                "elapsed_seconds": stats.elapsed_seconds,
            },
            "failures": [
                {
                    "kind": f.kind.value,
                    "test_name": f.test_name,
                    "suite_name": f.suite_name,
                    "message": f.message,
                    "location": str(f.location) if f.location else None,
                }
                for f in self.failures
            ],
            "timings": [
                {"name": t.name, "seconds": t.seconds, "scope": t.scope} for t in self.timings
            ],
        }


# =============================================================================
# Report
# =============================================================================


@dataclass(frozen=True)
class ReportContext:
    """What the report needs beyond the result itself."""

    command: str
    target: str
    raw_excerpt: str = ""


@dataclass(frozen=True)
class ReportSection:
    name: str  # header | summary | failure-analysis | performance | guidance
    title: str
    body: str

    def render(self) -> str:
        rule = "=" * 65
        return f"{rule}\n{self.title}\n{rule}\n{self.body}"


@dataclass(frozen=True)
class DiagnosticReport:
    """Ordered, named sections. Identical results give identical bytes."""

    sections: tuple[ReportSection, ...]

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.sections]

    def section(self, name: str) -> ReportSection | None:
        for s in self.sections:
            if s.name == name:
                return s
        return None

    @property
    def text(self) -> str:
        return "\n\n".join(s.render() for s in self.sections) + "\n"


# =============================================================================
# Session Progress / Outcome
# =============================================================================


@dataclass
class SessionProgress:
    """Live counts of completed test/file markers seen so far."""

    files_passed: int = 0
    files_failed: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    lines_seen: int = 0

    @property
    def files_completed(self) -> int:
        return self.files_passed + self.files_failed

    @property
    def tests_completed(self) -> int:
        return self.tests_passed + self.tests_failed


@dataclass(frozen=True)
class CaptureOutcome:
    """What CaptureSession.end() hands back."""

    session_id: str
    state: SessionState
    result: TestResult
    report: DiagnosticReport
    capture: RawCapture
