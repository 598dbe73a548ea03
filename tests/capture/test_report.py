"""Tests for capture/report.py."""

import pytest

from testscope.capture.models import (
    FailureKind,
    FailureRecord,
    ReportContext,
    RunOutcome,
    SourceLocation,
    TestResult,
    TestStatistics,
    TestTiming,
)
from testscope.capture.report import (
    NOT_AVAILABLE,
    ReportSynthesizer,
    guidance_key,
    performance_band,
    raw_excerpt,
)
from testscope.config.models import ReportConfig

CONTEXT = ReportContext(command="npx jest src/", target="app-a", raw_excerpt="boom\nexit 1")


def _result(**kwargs) -> TestResult:
    kwargs.setdefault("target", "app-a")
    kwargs.setdefault("success", False)
    kwargs.setdefault("statistics", TestStatistics())
    return TestResult(**kwargs)


def _assertion(name: str, message: str = "expected 1 to be 2") -> FailureRecord:
    return FailureRecord(
        kind=FailureKind.ASSERTION_FAILURE,
        message=message,
        test_name=name,
        suite_name="suite",
        location=SourceLocation("src/a.test.js", 7),
    )


@pytest.fixture
def synthesizer() -> ReportSynthesizer:
    return ReportSynthesizer(ReportConfig())


class TestSections:
    """Section presence and order."""

    def test_passing_run_has_no_failure_analysis(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(
            success=True,
            exit_code=0,
            statistics=TestStatistics(tests_passed=5, tests_failed=0, tests_total=5),
        )

        report = synthesizer.synthesize(result, CONTEXT)

        assert report.names == ["header", "summary", "guidance"]
        assert "STATUS: PASSED" in report.text
        assert "Tests: 0 failed, 5 passed, 5 total" in report.text

    def test_failing_run_section_order(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(
            exit_code=1,
            duration_seconds=2.0,
            statistics=TestStatistics(tests_failed=1, tests_total=1, elapsed_seconds=1.5),
            failures=(_assertion("adds"),),
        )

        report = synthesizer.synthesize(result, CONTEXT)

        assert report.names == ["header", "summary", "failure-analysis", "performance", "guidance"]

    def test_header_fields(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(exit_code=None, outcome=RunOutcome.TIMED_OUT)

        header = synthesizer.synthesize(result, CONTEXT).section("header")

        assert header is not None
        assert header.body.splitlines() == [
            "COMMAND: npx jest src/",
            "TARGET: app-a",
            "EXIT CODE: none",
            "OUTCOME: timed out",
            "STATUS: FAILED",
        ]

    def test_report_is_deterministic(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(
            exit_code=1,
            duration_seconds=3.0,
            failures=(_assertion("b"), _assertion("a")),
            timings=(TestTiming("slow one", 2.0), TestTiming("slow two", 2.0)),
        )

        first = synthesizer.synthesize(result, CONTEXT).text
        second = ReportSynthesizer(ReportConfig()).synthesize(result, CONTEXT).text

        assert first == second


class TestSummary:
    def test_unknown_counters_are_marked(self, synthesizer: ReportSynthesizer) -> None:
        summary = synthesizer.synthesize(_result(exit_code=1), CONTEXT).section("summary")

        assert summary is not None
        assert f"Test Suites: {NOT_AVAILABLE}" in summary.body
        assert f"Tests: {NOT_AVAILABLE}" in summary.body
        assert f"Time: {NOT_AVAILABLE}" in summary.body
        assert "no summary counters were found" in summary.body

    def test_partial_counters_render_unknown(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(exit_code=1, statistics=TestStatistics(tests_failed=2))

        summary = synthesizer.synthesize(result, CONTEXT).section("summary")

        assert summary is not None
        assert "Tests: 2 failed, unknown passed, unknown total" in summary.body

    def test_collapse_note_and_suite_results(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(
            exit_code=1,
            collapse_detected=True,
            statistics=TestStatistics(tests_total=0),
            suite_results=(("FAIL", "src/broken.test.ts"),),
        )

        summary = synthesizer.synthesize(result, CONTEXT).section("summary")

        assert summary is not None
        assert "collapsed before producing countable test results" in summary.body
        assert "  FAIL src/broken.test.ts" in summary.body


class TestFailureAnalysis:
    def test_groups_errors_before_test_failures(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(
            exit_code=1,
            failures=(
                _assertion("adds"),
                FailureRecord(
                    kind=FailureKind.COMPILATION_ERROR,
                    message="Cannot find module './missing'",
                    suite_name="src/b.test.js",
                ),
            ),
        )

        body = synthesizer.synthesize(result, CONTEXT).section("failure-analysis").body

        assert body.index("COMPILATION/RUNTIME ERRORS:") < body.index("TEST FAILURES:")
        assert "• src/b.test.js [CompilationError]" in body
        assert "• suite › adds [AssertionFailure]" in body
        assert "  at src/a.test.js:7" in body

    def test_no_detail_notice_with_raw_excerpt(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(exit_code=1)

        body = synthesizer.synthesize(result, CONTEXT).section("failure-analysis").body

        assert body.startswith("No failure detail available")
        assert "Raw output excerpt:\nboom\nexit 1" in body

    def test_message_lines_are_capped(self) -> None:
        synthesizer = ReportSynthesizer(ReportConfig(max_message_lines=2))
        result = _result(exit_code=1, failures=(_assertion("t", "l1\nl2\nl3\nl4"),))

        body = synthesizer.synthesize(result, CONTEXT).section("failure-analysis").body

        assert "    l2" in body
        assert "    l3" not in body
        assert "    (2 more lines)" in body

    def test_failures_are_truncated(self) -> None:
        synthesizer = ReportSynthesizer(ReportConfig(max_failures=2))
        result = _result(exit_code=1, failures=tuple(_assertion(f"t{i}") for i in range(5)))

        body = synthesizer.synthesize(result, CONTEXT).section("failure-analysis").body

        assert body.count("• ") == 2
        assert body.endswith("... and 3 more")


class TestPerformance:
    @pytest.mark.parametrize(
        ("seconds", "band"),
        [
            (0.0, "fast"),
            (4.99, "fast"),
            (5.0, "normal"),
            (14.9, "normal"),
            (15.0, "slow"),
            (59.9, "slow"),
            (60.0, "very slow"),
        ],
    )
    def test_bands(self, seconds: float, band: str) -> None:
        assert performance_band(seconds) == band

    def test_slow_tests_sorted_descending(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(
            success=True,
            exit_code=0,
            statistics=TestStatistics(elapsed_seconds=20.0),
            timings=(
                TestTiming("quick", 0.2),
                TestTiming("slow b", 1.5),
                TestTiming("slow a", 1.5),
                TestTiming("slowest.test.js", 8.0, scope="file"),
            ),
        )

        body = synthesizer.synthesize(result, CONTEXT).section("performance").body
        lines = body.splitlines()

        assert lines[0] == "Elapsed: 20.00s (slow)"
        assert lines[2] == "Slow tests (>1s):"
        assert [line.split("s  ", 1)[1] for line in lines[3:]] == [
            "slowest.test.js (file)",
            "slow a",
            "slow b",
        ]
        assert "quick" not in body

    def test_no_slow_tests_notice(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(success=True, duration_seconds=0.4, timings=(TestTiming("t", 0.1),))

        body = synthesizer.synthesize(result, CONTEXT).section("performance").body

        assert body.splitlines() == ["Elapsed: 0.40s (fast)", "No test exceeded 1s."]


class TestGuidance:
    @pytest.mark.parametrize(
        ("kwargs", "key"),
        [
            ({"success": True}, "passed"),
            ({"outcome": RunOutcome.SPAWN_FAILED}, "spawn"),
            ({"outcome": RunOutcome.TIMED_OUT}, "timeout"),
            (
                {
                    "failures": (
                        FailureRecord(FailureKind.SUITE_SETUP_FAILURE, "empty"),
                        FailureRecord(FailureKind.ASSERTION_FAILURE, "x", test_name="t"),
                    )
                },
                "compilation",
            ),
            ({"outcome": RunOutcome.CANCELLED}, "cancelled"),
            ({"failures": (FailureRecord(FailureKind.RUNTIME_ERROR, "x"),)}, "assertion"),
            ({}, "unknown"),
        ],
    )
    def test_precedence(self, kwargs: dict, key: str) -> None:
        assert guidance_key(_result(**kwargs)) == key

    def test_assertion_guidance_lists_patterns(self, synthesizer: ReportSynthesizer) -> None:
        result = _result(exit_code=1, failures=(_assertion("adds two"),))

        body = synthesizer.synthesize(result, CONTEXT).section("guidance").body

        assert "Failing test name patterns:" in body
        assert r"  suite.*adds\ two" in body


class TestRawExcerpt:
    def test_keeps_last_non_blank_lines(self) -> None:
        assert raw_excerpt("a\n\nb\nc\n  \nd\n", 2) == "c\nd"

    def test_zero_lines(self) -> None:
        assert raw_excerpt("a\nb\n", 0) == ""
