"""Diagnostic report synthesis.

A pure function of (TestResult, ReportContext): no clocks, no environment,
no randomness. Identical inputs give byte-identical reports, so a report
can be regenerated on demand and diffed between runs.
"""

from __future__ import annotations

from testscope.capture.models import (
    DiagnosticReport,
    FailureKind,
    FailureRecord,
    ReportContext,
    ReportSection,
    RunOutcome,
    TestResult,
    TestTiming,
)
from testscope.config.constants import FAST_BAND_MAX_SEC, NORMAL_BAND_MAX_SEC, SLOW_BAND_MAX_SEC
from testscope.config.models import ReportConfig

NOT_AVAILABLE = "information not available"

_GUIDANCE: dict[str, tuple[str, ...]] = {
    "passed": (
        "All tests passed. No action needed.",
        "If this run was expected to exercise new code, confirm the new tests were collected.",
    ),
    "compilation": (
        "The suite did not run: fix the compilation or setup errors above first.",
        "Check imports, module paths and syntax in the files listed.",
        "Test failures cannot be trusted until the suite compiles.",
    ),
    "assertion": (
        "Tests ran and some assertions failed.",
        "Compare expected and received values for each failure above.",
        "Decide whether the code under test or the test expectation is wrong.",
    ),
    "timeout": (
        "The run was stopped after exceeding its timeout.",
        "Look for hanging tests, open handles or unresolved promises.",
        "Re-run the slowest files individually or raise the timeout.",
    ),
    "spawn": (
        "The test command could not be started.",
        "Verify the executable exists on PATH and the working directory is valid.",
    ),
    "cancelled": (
        "The run was cancelled before it finished; results are partial.",
        "Re-run to obtain a complete result.",
    ),
    "unknown": (
        "The run failed but the cause could not be classified.",
        "Read the raw output excerpt above for the first error.",
    ),
}


def performance_band(seconds: float) -> str:
    """Map elapsed seconds to fast / normal / slow / very slow."""
    if seconds < FAST_BAND_MAX_SEC:
        return "fast"
    if seconds < NORMAL_BAND_MAX_SEC:
        return "normal"
    if seconds < SLOW_BAND_MAX_SEC:
        return "slow"
    return "very slow"


def raw_excerpt(text: str, max_lines: int) -> str:
    """Last non-blank lines of output, for reports without failure detail."""
    lines = [line for line in text.splitlines() if line.strip()]
    return "\n".join(lines[-max_lines:]) if max_lines > 0 else ""


def guidance_key(result: TestResult) -> str:
    """Select the guidance row. Fixed precedence, first match wins."""
    if result.success:
        return "passed"
    if result.outcome == RunOutcome.SPAWN_FAILED or result.has_kind(FailureKind.SPAWN_ERROR):
        return "spawn"
    if result.outcome == RunOutcome.TIMED_OUT or result.has_kind(FailureKind.TIMEOUT_ERROR):
        return "timeout"
    if result.has_kind(FailureKind.COMPILATION_ERROR, FailureKind.SUITE_SETUP_FAILURE):
        return "compilation"
    if result.outcome == RunOutcome.CANCELLED:
        return "cancelled"
    if result.has_kind(FailureKind.ASSERTION_FAILURE, FailureKind.RUNTIME_ERROR):
        return "assertion"
    return "unknown"


class ReportSynthesizer:
    """Builds DiagnosticReports. Holds configuration only."""

    def __init__(self, config: ReportConfig | None = None) -> None:
        self._config = config or ReportConfig()

    def synthesize(self, result: TestResult, context: ReportContext) -> DiagnosticReport:
        sections = [
            self._header(result, context),
            self._summary(result),
        ]
        if not result.success:
            sections.append(self._failure_analysis(result, context))
        performance = self._performance(result)
        if performance is not None:
            sections.append(performance)
        sections.append(self._guidance(result))
        return DiagnosticReport(sections=tuple(sections))

    # -------------------------------------------------------------------------
    # Sections
    # -------------------------------------------------------------------------

    def _header(self, result: TestResult, context: ReportContext) -> ReportSection:
        exit_text = str(result.exit_code) if result.exit_code is not None else "none"
        lines = [
            f"COMMAND: {context.command}",
            f"TARGET: {context.target}",
            f"EXIT CODE: {exit_text}",
        ]
        if result.outcome != RunOutcome.COMPLETED:
            lines.append(f"OUTCOME: {result.outcome.value.replace('_', ' ')}")
        lines.append(f"STATUS: {'PASSED' if result.success else 'FAILED'}")
        return ReportSection(name="header", title="TEST ANALYSIS REPORT", body="\n".join(lines))

    def _summary(self, result: TestResult) -> ReportSection:
        stats = result.statistics
        lines: list[str] = []

        if any(v is not None for v in (stats.suites_passed, stats.suites_failed, stats.suites_total)):
            lines.append(
                f"Test Suites: {_count(stats.suites_failed)} failed, "
                f"{_count(stats.suites_passed)} passed, {_count(stats.suites_total)} total"
            )
        else:
            lines.append(f"Test Suites: {NOT_AVAILABLE}")

        if any(
            v is not None
            for v in (stats.tests_passed, stats.tests_failed, stats.tests_skipped, stats.tests_total)
        ):
            tests_line = (
                f"Tests: {_count(stats.tests_failed)} failed, {_count(stats.tests_passed)} passed"
            )
            if stats.tests_skipped is not None:
                tests_line += f", {stats.tests_skipped} skipped"
            tests_line += f", {_count(stats.tests_total)} total"
            lines.append(tests_line)
        else:
            lines.append(f"Tests: {NOT_AVAILABLE}")

        if stats.elapsed_seconds is not None:
            lines.append(f"Time: {stats.elapsed_seconds:.2f}s")
        else:
            lines.append(f"Time: {NOT_AVAILABLE}")
        lines.append(f"Wall clock: {result.duration_seconds:.2f}s")

        if stats.is_ambiguous:
            lines.append("Note: no summary counters were found in the output.")
        if result.collapse_detected:
            lines.append("Note: the suite collapsed before producing countable test results.")

        if result.suite_results:
            lines.append("")
            lines.extend(f"  {status} {name}" for status, name in result.suite_results)

        return ReportSection(name="summary", title="EXECUTIVE SUMMARY", body="\n".join(lines))

    def _failure_analysis(self, result: TestResult, context: ReportContext) -> ReportSection:
        if not result.failures:
            excerpt = context.raw_excerpt.strip() or "(no output captured)"
            body = "\n".join(
                [
                    "No failure detail available: the run failed but no individual "
                    "failure could be extracted from the output.",
                    "",
                    "Raw output excerpt:",
                    excerpt,
                ]
            )
            return ReportSection(name="failure-analysis", title="FAILURE ANALYSIS", body=body)

        shown = result.failures[: self._config.max_failures]
        hidden = len(result.failures) - len(shown)
        errors = [f for f in shown if not _is_test_failure(f)]
        tests = [f for f in shown if _is_test_failure(f)]

        lines: list[str] = []
        if errors:
            lines.extend(["COMPILATION/RUNTIME ERRORS:", "-" * 32])
            for failure in errors:
                lines.extend(self._render_failure(failure))
        if tests:
            if lines:
                lines.append("")
            lines.extend(["TEST FAILURES:", "-" * 17])
            for failure in tests:
                lines.extend(self._render_failure(failure))
        if hidden > 0:
            lines.append(f"... and {hidden} more")

        return ReportSection(
            name="failure-analysis", title="FAILURE ANALYSIS", body="\n".join(lines)
        )

    def _render_failure(self, failure: FailureRecord) -> list[str]:
        lines = [f"• {failure.display_name} [{failure.kind.value}]"]
        if failure.location is not None:
            lines.append(f"  at {failure.location}")
        message_lines = [line for line in failure.message.splitlines() if line.strip()]
        limit = self._config.max_message_lines
        lines.extend(f"    {line.strip()}" for line in message_lines[:limit])
        if len(message_lines) > limit:
            lines.append(f"    ({len(message_lines) - limit} more lines)")
        return lines

    def _performance(self, result: TestResult) -> ReportSection | None:
        elapsed = result.statistics.elapsed_seconds
        if elapsed is None and result.duration_seconds <= 0 and not result.timings:
            return None
        seconds = elapsed if elapsed is not None else result.duration_seconds
        lines = [f"Elapsed: {seconds:.2f}s ({performance_band(seconds)})"]

        threshold = self._config.slow_test_threshold_sec
        slow = sorted(
            (t for t in result.timings if t.seconds > threshold),
            key=lambda t: (-t.seconds, t.name, t.scope),
        )
        if slow:
            lines.append("")
            lines.append(f"Slow tests (>{threshold:g}s):")
            lines.extend(_render_timing(t) for t in slow)
        elif result.timings:
            lines.append(f"No test exceeded {threshold:g}s.")

        return ReportSection(name="performance", title="PERFORMANCE INSIGHTS", body="\n".join(lines))

    def _guidance(self, result: TestResult) -> ReportSection:
        key = guidance_key(result)
        lines = [f"- {text}" for text in _GUIDANCE[key]]
        if key == "assertion":
            patterns = result.rerun_patterns()
            if patterns:
                lines.append("")
                lines.append("Failing test name patterns:")
                lines.extend(f"  {p}" for p in patterns[: self._config.max_failures])
        return ReportSection(name="guidance", title="NEXT STEPS", body="\n".join(lines))


def _count(value: int | None) -> str:
    return "unknown" if value is None else str(value)


def _is_test_failure(failure: FailureRecord) -> bool:
    return failure.kind == FailureKind.ASSERTION_FAILURE


def _render_timing(timing: TestTiming) -> str:
    suffix = " (file)" if timing.scope == "file" else ""
    return f"  {timing.seconds:>7.2f}s  {timing.name}{suffix}"
