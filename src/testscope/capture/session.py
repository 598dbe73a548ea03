"""Capture sessions.

A CaptureSession composes runner, normalizer, classifier and report
synthesizer for each run it begins:

    session = CaptureSession(config)
    session_id = await session.begin(request)
    progress = session.progress(session_id)       # while running
    outcome = await session.end(session_id)       # result + report

Lifecycle per session:

    idle -> running -> {completed | timed_out | cancelled | spawn_failed} -> finalized

Only finalized sessions yield a report; running sessions expose partial
progress and partial output only.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from testscope.capture.classifier import ResultClassifier
from testscope.capture.dialects import DialectRegistry, dialect_registry
from testscope.capture.models import (
    CaptureOutcome,
    DiagnosticReport,
    RawCapture,
    ReportContext,
    RunOutcome,
    SessionProgress,
    SessionState,
    StreamName,
    TestResult,
    TestRunRequest,
)
from testscope.capture.normalizer import OutputNormalizer
from testscope.capture.report import ReportSynthesizer, raw_excerpt
from testscope.capture.runner import Clock, ProcessRunner, RunHandle, RunRegistry, Spawner
from testscope.config.models import TestScopeConfig
from testscope.core.errors import CaptureError, InternalError
from testscope.core.logging import session_context

log = structlog.get_logger(__name__)

_PASS_STATUSES = frozenset({"PASS", "PASSED", "ok", "✓", "✔", "√"})

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.RUNNING, SessionState.SPAWN_FAILED}),
    SessionState.RUNNING: frozenset(
        {
            SessionState.COMPLETED,
            SessionState.TIMED_OUT,
            SessionState.CANCELLED,
            SessionState.SPAWN_FAILED,
        }
    ),
    SessionState.COMPLETED: frozenset({SessionState.FINALIZED}),
    SessionState.TIMED_OUT: frozenset({SessionState.FINALIZED}),
    SessionState.CANCELLED: frozenset({SessionState.FINALIZED}),
    SessionState.SPAWN_FAILED: frozenset({SessionState.FINALIZED}),
    SessionState.FINALIZED: frozenset(),
}


@dataclass
class _SessionRecord:
    """Per-session mutable state. Owned by CaptureSession."""

    session_id: str
    request: TestRunRequest
    state: SessionState = SessionState.IDLE
    capture: RawCapture = field(default_factory=RawCapture)
    progress: SessionProgress = field(default_factory=SessionProgress)
    normalizers: dict[str, OutputNormalizer] = field(
        default_factory=lambda: {"stdout": OutputNormalizer(), "stderr": OutputNormalizer()}
    )
    handle: RunHandle | None = None
    result: TestResult | None = None
    report: DiagnosticReport | None = None
    end_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class CaptureSession:
    """Orchestrates capture sessions and owns the active-run registry."""

    def __init__(
        self,
        config: TestScopeConfig | None = None,
        *,
        clock: Clock | None = None,
        spawner: Spawner | None = None,
        dialects: DialectRegistry | None = None,
    ) -> None:
        self._config = config or TestScopeConfig()
        self._registry = RunRegistry()
        self._runner = ProcessRunner(
            registry=self._registry,
            config=self._config.runner,
            clock=clock,
            spawner=spawner,
        )
        self._dialects = dialects or dialect_registry
        self._classifier = ResultClassifier(self._dialects)
        self._synthesizer = ReportSynthesizer(self._config.report)
        self._sessions: dict[str, _SessionRecord] = {}
        self._counter = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def begin(self, request: TestRunRequest) -> str:
        """Start a run and return its session id.

        Any live run for the same target is cancelled, and reaches its
        terminal state, before the new process starts.
        """
        self._counter += 1
        session_id = f"{request.target}-{self._counter}"
        record = _SessionRecord(session_id=session_id, request=request)
        self._sessions[session_id] = record

        # The supervision task copies this context, so runner events carry the id
        with session_context(session_id):
            log.info("session_begin", target=request.target)
            handle = await self._runner.start(
                request,
                on_stdout=lambda text: self._on_output(record, "stdout", text),
                on_stderr=lambda text: self._on_output(record, "stderr", text),
                on_exit=lambda code, outcome: self._on_exit(record, code, outcome),
            )
        record.handle = handle
        record.capture.started_at = handle.started_at
        if handle.outcome == RunOutcome.SPAWN_FAILED:
            record.capture.ended_at = handle.ended_at
            record.capture.duration_seconds = handle.duration_seconds
        else:
            # Supervision task has not run yet; exit cannot precede this
            self._transition(record, SessionState.RUNNING)
        return session_id

    def state(self, session_id: str) -> SessionState:
        return self._get(session_id).state

    def progress(self, session_id: str) -> SessionProgress:
        """Counts of completed test/file markers seen so far (a copy)."""
        p = self._get(session_id).progress
        return SessionProgress(
            files_passed=p.files_passed,
            files_failed=p.files_failed,
            tests_passed=p.tests_passed,
            tests_failed=p.tests_failed,
            lines_seen=p.lines_seen,
        )

    def partial_output(self, session_id: str) -> str:
        """Normalized output captured so far."""
        return self._get(session_id).capture.combined

    def cancel(self, session_id: str) -> None:
        """Request cancellation. end() waits for the terminal state."""
        record = self._get(session_id)
        if record.handle is not None and not record.handle.done:
            log.info("session_cancel", session_id=session_id)
            record.handle.cancel()

    async def wait(self, session_id: str) -> SessionState:
        """Wait until the session reaches a terminal (or finalized) state."""
        record = self._get(session_id)
        if record.handle is not None:
            await record.handle.wait()
        return record.state

    async def end(self, session_id: str) -> CaptureOutcome:
        """Wait for the run to finish, classify, synthesize and finalize.

        Calling end() again, concurrently or later, returns the same outcome.
        The run handle is released once the session is finalized.
        """
        record = self._get(session_id)
        async with record.end_lock:
            if record.state != SessionState.FINALIZED:
                await self.wait(session_id)
                record.result = self._classify(record)
                record.report = self._synthesizer.synthesize(record.result, self._context(record))
                self._transition(record, SessionState.FINALIZED)
                record.handle = None
                log.info(
                    "session_finalized",
                    session_id=session_id,
                    success=record.result.success,
                    failures=len(record.result.failures),
                )
        if record.result is None or record.report is None:
            raise InternalError.unexpected("finalized session has no result", session_id=session_id)
        return CaptureOutcome(
            session_id=session_id,
            state=record.state,
            result=record.result,
            report=record.report,
            capture=record.capture,
        )

    def report(self, session_id: str) -> DiagnosticReport:
        """Regenerate the report of a finalized session."""
        record = self._get(session_id)
        if record.state != SessionState.FINALIZED or record.result is None:
            raise CaptureError.not_finalized(session_id, record.state.value)
        return self._synthesizer.synthesize(record.result, self._context(record))

    def sessions(self) -> list[str]:
        return list(self._sessions)

    async def shutdown(self) -> None:
        """Cancel every live run; each ends terminated or killed."""
        active = self._registry.active()
        if active:
            log.info("session_shutdown", active=len(active))
        await self._registry.sweep()

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def _on_output(self, record: _SessionRecord, stream: StreamName, text: str) -> None:
        normalized = record.normalizers[stream].feed(text)
        if normalized:
            self._count_lines(record, record.capture.append(stream, normalized))

    def _on_exit(self, record: _SessionRecord, exit_code: int | None, outcome: RunOutcome) -> None:
        for stream in ("stdout", "stderr"):
            tail = record.normalizers[stream].flush()
            if tail:
                self._count_lines(record, record.capture.append(stream, tail))
        # Spawn failures call back from inside start(), before the handle is assigned
        handle = record.handle
        record.capture.freeze(
            exit_code=exit_code,
            ended_at=handle.ended_at if handle is not None else None,
            duration_seconds=handle.duration_seconds if handle is not None else 0.0,
        )
        self._transition(record, SessionState.from_outcome(outcome))

    def _count_lines(self, record: _SessionRecord, lines: list[str]) -> None:
        progress = record.progress
        for line in lines:
            progress.lines_seen += 1
            hit = self._match_progress(line)
            if hit is None:
                continue
            scope, passed = hit
            if scope == "file":
                if passed:
                    progress.files_passed += 1
                else:
                    progress.files_failed += 1
            elif passed:
                progress.tests_passed += 1
            else:
                progress.tests_failed += 1

    def _match_progress(self, line: str) -> tuple[str, bool] | None:
        for dialect in self._dialects.all():
            for pattern, scope in dialect.progress_markers:
                match = pattern.search(line)
                if match:
                    return scope, match.group("status") in _PASS_STATUSES
        return None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise CaptureError.session_not_found(session_id)
        return record

    def _transition(self, record: _SessionRecord, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[record.state]:
            raise CaptureError.invalid_transition(
                record.session_id, record.state.value, new_state.value
            )
        log.debug(
            "session_transition",
            session_id=record.session_id,
            from_state=record.state.value,
            to_state=new_state.value,
        )
        record.state = new_state

    def _classify(self, record: _SessionRecord) -> TestResult:
        handle = record.handle
        outcome = handle.outcome if handle and handle.outcome else RunOutcome.SPAWN_FAILED
        return self._classifier.classify(
            record.request.target,
            record.capture.combined,
            record.capture.exit_code,
            record.capture.duration_seconds,
            outcome=outcome,
            spawn_error=handle.spawn_error if handle else None,
        )

    def _context(self, record: _SessionRecord) -> ReportContext:
        return ReportContext(
            command=record.request.command_line,
            target=record.request.target,
            raw_excerpt=raw_excerpt(record.capture.combined, self._config.report.raw_excerpt_lines),
        )
