"""Tests for capture/classifier.py.

Output samples mirror what each runner prints with colors already stripped.
"""

import pytest

from testscope.capture.classifier import ResultClassifier
from testscope.capture.dialects import Dialect, DialectRegistry, FailureMarker
from testscope.capture.models import FailureKind, RunOutcome, SourceLocation

JEST_FAILURE = """\
FAIL src/math.test.js
  ● math › adds numbers

    expect(received).toBe(expected) // Object.is equality

    Expected: 4
    Received: 5

      10 |   it('adds numbers', () => {
    > 11 |     expect(add(2, 2)).toBe(4);
         |                       ^
      12 |   });

      at Object.<anonymous> (src/math.test.js:11:23)

PASS src/other.test.js
Test Suites: 1 failed, 1 passed, 2 total
Tests:       1 failed, 3 passed, 4 total
Time:        1.234 s
"""

JEST_EMPTY_SUITE = """\
FAIL src/empty.test.js
  ● Test suite failed to run

    Your test suite must contain at least one test.

Test Suites: 1 failed, 1 total
Tests:       0 total
"""

PYTEST_FAILURE = """\
============================= test session starts ==============================
collected 3 items

tests/test_calc.py .F.                                                   [100%]

=================================== FAILURES ===================================
_________________________________ test_divide __________________________________

    def test_divide():
>       assert divide(4, 2) == 3
E       assert 2.0 == 3
E        +  where 2.0 = divide(4, 2)

tests/test_calc.py:12: AssertionError
=========================== short test summary info ============================
FAILED tests/test_calc.py::test_divide - assert 2.0 == 3
========================= 1 failed, 2 passed in 0.12s ==========================
"""

PYTEST_COLLECTION_ERROR = """\
==================================== ERRORS ====================================
____________________ ERROR collecting tests/test_broken.py _____________________
ImportError while importing test module '/repo/tests/test_broken.py'.
E   ModuleNotFoundError: No module named 'missing_dep'
=========================== short test summary info ============================
ERROR tests/test_broken.py
!!!!!!!!!!!!!!!!!!!! Interrupted: 1 error during collection !!!!!!!!!!!!!!!!!!!!
=============================== 1 error in 0.05s ===============================
"""

VITEST_FAILURE = """\
 FAIL  src/sum.test.ts > sum > adds
AssertionError: expected 3 to be 4 // Object.is equality
 ❯ src/sum.test.ts:5:17

 Test Files  1 failed (1)
      Tests  1 failed | 2 passed (3)
   Duration  1.52s
"""

MOCHA_FAILURE = """\
  Array
    #indexOf()
      ✓ should return -1 when the value is not present
      1) should return the index


  1 passing (9ms)
  1 failing

  1) Array
       #indexOf()
         should return the index:

      AssertionError [ERR_ASSERTION]: expected -1 to equal 0
      + expected - actual

      at Context.<anonymous> (test/array.spec.js:10:14)
"""

GO_FAILURE = """\
=== RUN   TestAdd
--- FAIL: TestAdd (0.00s)
    calc_test.go:12: got 3, want 4
=== RUN   TestSub
--- PASS: TestSub (0.00s)
FAIL
FAIL\texample.com/calc\t0.005s
FAIL
"""


@pytest.fixture
def classifier() -> ResultClassifier:
    return ResultClassifier()


class TestCounters:
    """Summary statistics."""

    def test_all_passing_summary(self, classifier: ResultClassifier) -> None:
        """A passing summary with exit 0 succeeds."""
        result = classifier.classify("app-a", "Tests: 5 passed, 0 failed, 5 total\n", 0, 1.0)

        assert result.success
        assert result.statistics.tests_passed == 5
        assert result.statistics.tests_failed == 0
        assert result.statistics.tests_total == 5
        assert result.failures == ()

    def test_jest_counters_and_time(self, classifier: ResultClassifier) -> None:
        stats = classifier.classify("app", JEST_FAILURE, 1, 2.0).statistics

        assert (stats.suites_failed, stats.suites_passed, stats.suites_total) == (1, 1, 2)
        assert (stats.tests_failed, stats.tests_passed, stats.tests_total) == (1, 3, 4)
        assert stats.elapsed_seconds == 1.234

    def test_vitest_pipe_separated_counters(self, classifier: ResultClassifier) -> None:
        stats = classifier.classify("app", VITEST_FAILURE, 1, 2.0).statistics

        assert (stats.suites_failed, stats.suites_total) == (1, 1)
        assert (stats.tests_failed, stats.tests_passed, stats.tests_total) == (1, 2, 3)
        assert stats.elapsed_seconds == 1.52

    def test_mocha_phrases(self, classifier: ResultClassifier) -> None:
        stats = classifier.classify("app", MOCHA_FAILURE, 1, 2.0).statistics

        assert stats.tests_passed == 1
        assert stats.tests_failed == 1
        assert stats.tests_total is None
        assert stats.elapsed_seconds == 0.009

    def test_counters_summed_across_lines(self, classifier: ResultClassifier) -> None:
        """Workspaces print one summary per package; counts add up."""
        output = "Tests: 2 passed, 2 total\nTests: 1 failed, 3 passed, 4 total\n"

        stats = classifier.classify("mono", output, 1, 1.0).statistics

        assert stats.tests_passed == 5
        assert stats.tests_failed == 1
        assert stats.tests_total == 6

    def test_missing_counters_stay_unknown(self, classifier: ResultClassifier) -> None:
        """Counters never printed are None, not zero."""
        result = classifier.classify("app", "hello from a custom runner\n", 0, 0.3)

        assert result.success
        assert result.statistics.is_ambiguous
        assert result.statistics.tests_passed is None

    def test_specific_elapsed_preferred_over_generic(self, classifier: ResultClassifier) -> None:
        output = "Tests: 1 passed, 1 total\nTime:        0.8 s\nDone in 3.20s.\n"

        assert classifier.classify("app", output, 0, 4.0).statistics.elapsed_seconds == 0.8


class TestVerdict:
    """Exit code and collapse precedence."""

    def test_nonzero_exit_overrides_passing_counts(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", "Tests: 5 passed, 5 total\n", 1, 1.0)

        assert not result.success
        assert result.statistics.tests_passed == 5

    def test_collapse_overrides_passing_counts_and_zero_exit(
        self, classifier: ResultClassifier
    ) -> None:
        """A compile error fails the run even when counters say all passed."""
        output = "src/app.ts(3,7): error TS2322: Type 'string' is not assignable\nTests: 3 passed, 3 total\n"

        result = classifier.classify("app", output, 0, 1.0)

        assert not result.success
        assert result.collapse_detected
        assert result.failures[0].kind == FailureKind.COMPILATION_ERROR
        assert result.failures[0].location == SourceLocation("src/app.ts", 3)

    @pytest.mark.parametrize(
        "title_line",
        [
            "  ✓ reports Cannot find module errors to the user (3 ms)",
            "  ✓ No tests found banner is printed (2 ms)",
            "  √ formats error TS2322 diagnostics (1 ms)",
            "  ✔ reports Module not found errors",
            "tests/test_cli.py::test_reports_ModuleNotFoundError PASSED",
        ],
    )
    def test_banner_text_in_passing_test_title_is_not_a_collapse(
        self, classifier: ResultClassifier, title_line: str
    ) -> None:
        output = f"PASS src/errors.test.js\n{title_line}\nTests: 1 passed, 1 total\n"

        result = classifier.classify("app", output, 0, 1.0)

        assert result.success
        assert not result.collapse_detected
        assert result.failures == ()

    def test_failed_counter_overrides_zero_exit(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", "Tests: 1 failed, 1 total\n", 0, 1.0)

        assert not result.success

    def test_suite_collapse_without_blocks(self, classifier: ResultClassifier) -> None:
        """Bare collapse markers still produce one suite-setup failure."""
        output = "Test suite failed to run\nYour test suite must contain at least one test.\n"

        result = classifier.classify("app", output, 1, 0.4)

        assert not result.success
        assert result.statistics.tests_total == 0
        assert len(result.failures) == 1
        assert result.failures[0].kind == FailureKind.SUITE_SETUP_FAILURE
        assert "must contain at least one test" in result.failures[0].message

    def test_jest_empty_suite(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", JEST_EMPTY_SUITE, 1, 0.4)

        assert not result.success
        assert result.statistics.tests_total == 0
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.kind == FailureKind.SUITE_SETUP_FAILURE
        assert failure.suite_name == "src/empty.test.js"
        assert failure.test_name is None

    def test_pytest_collection_error(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("py", PYTEST_COLLECTION_ERROR, 2, 0.4)

        assert not result.success
        assert result.collapse_detected
        kinds = [f.kind for f in result.failures]
        assert kinds == [FailureKind.COMPILATION_ERROR]
        assert result.failures[0].suite_name == "tests/test_broken.py"


class TestFailureBlocks:
    """Per-runner failure extraction."""

    def test_jest_block(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", JEST_FAILURE, 1, 2.0)

        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.kind == FailureKind.ASSERTION_FAILURE
        assert failure.suite_name == "math"
        assert failure.test_name == "adds numbers"
        assert failure.location == SourceLocation("src/math.test.js", 11)
        assert failure.message.startswith("expect(received).toBe(expected)")
        assert "Received: 5" in failure.message
        assert "|" not in failure.message
        assert result.suite_results == (("FAIL", "src/math.test.js"), ("PASS", "src/other.test.js"))
        assert "jest" in result.dialects

    def test_jest_console_block_is_not_a_failure(self, classifier: ResultClassifier) -> None:
        output = (
            "PASS src/a.test.js\n"
            "  ● Console\n\n"
            "    console.log\n"
            "      hello\n\n"
            "Tests: 1 passed, 1 total\n"
        )

        result = classifier.classify("app", output, 0, 1.0)

        assert result.success
        assert result.failures == ()

    def test_pytest_block(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("py", PYTEST_FAILURE, 1, 0.5)

        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.kind == FailureKind.ASSERTION_FAILURE
        assert failure.test_name == "test_divide"
        assert failure.location == SourceLocation("tests/test_calc.py", 12)
        assert result.statistics.tests_failed == 1
        assert result.statistics.tests_passed == 2
        assert result.statistics.elapsed_seconds == 0.12

    def test_pytest_summary_only(self, classifier: ResultClassifier) -> None:
        """Without -ra blocks the short summary still names the failures."""
        output = (
            "FAILED tests/test_api.py::TestUsers::test_create - KeyError: 'id'\n"
            "==================== 1 failed, 4 passed in 0.30s ====================\n"
        )

        result = classifier.classify("py", output, 1, 0.5)

        failure = result.failures[0]
        assert failure.test_name == "test_create"
        assert failure.suite_name == "TestUsers"
        assert failure.kind == FailureKind.RUNTIME_ERROR
        assert failure.location == SourceLocation("tests/test_api.py")

    def test_vitest_block(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", VITEST_FAILURE, 1, 2.0)

        failure = result.failures[0]
        assert failure.test_name == "adds"
        assert failure.suite_name == "sum"
        assert failure.location == SourceLocation("src/sum.test.ts", 5)
        assert failure.kind == FailureKind.ASSERTION_FAILURE

    def test_mocha_wrapped_title(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", MOCHA_FAILURE, 1, 2.0)

        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.test_name == "should return the index"
        assert failure.suite_name == "Array › #indexOf()"
        assert failure.location == SourceLocation("test/array.spec.js", 10)

    def test_go_block(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("svc", GO_FAILURE, 1, 0.1)

        assert not result.success
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.test_name == "TestAdd"
        assert failure.kind == FailureKind.ASSERTION_FAILURE
        assert failure.location == SourceLocation("calc_test.go", 12)
        assert ("FAIL", "example.com/calc") in result.suite_results

    def test_go_subtests_drop_empty_parent(self, classifier: ResultClassifier) -> None:
        output = (
            "--- FAIL: TestParse (0.00s)\n"
            "    --- FAIL: TestParse/empty_input (0.00s)\n"
            "        parse_test.go:20: got error, want nil\n"
            "FAIL\n"
        )

        result = classifier.classify("svc", output, 1, 0.1)

        assert [(f.suite_name, f.test_name) for f in result.failures] == [
            ("TestParse", "empty_input")
        ]

    def test_retried_failures_are_deduplicated(self, classifier: ResultClassifier) -> None:
        block = "  ● api › retries\n\n    expect(received).toBe(expected)\n\n"
        output = "FAIL src/api.test.js\n" + block + block + "Tests: 1 failed, 1 total\n"

        result = classifier.classify("app", output, 1, 1.0)

        assert len(result.failures) == 1

    def test_library_frames_are_skipped_for_location(self, classifier: ResultClassifier) -> None:
        output = (
            "  ● db › connects\n\n"
            "    TypeError: Cannot read properties of undefined\n\n"
            "      at Pool.connect (node_modules/pg/lib/pool.js:45:11)\n"
            "      at Object.<anonymous> (src/db.test.js:8:5)\n"
        )

        failure = classifier.classify("app", output, 1, 1.0).failures[0]

        assert failure.kind == FailureKind.RUNTIME_ERROR
        assert failure.location == SourceLocation("src/db.test.js", 8)

    def test_bracketed_parameters_are_not_split(self, classifier: ResultClassifier) -> None:
        output = "____________ TestMath.test_add[1.5-2.5] ____________\n\nE   assert 4.0 == 5\n"

        failure = classifier.classify("py", output, 1, 1.0).failures[0]

        assert failure.suite_name == "TestMath"
        assert failure.test_name == "test_add[1.5-2.5]"


class TestRunOutcomes:
    """Timeouts, spawn failures, cancellations and empty output."""

    def test_spawn_failure(self, classifier: ResultClassifier) -> None:
        result = classifier.classify(
            "app",
            "",
            None,
            0.0,
            outcome=RunOutcome.SPAWN_FAILED,
            spawn_error="Executable not found: jestx",
        )

        assert not result.success
        assert result.statistics.is_ambiguous
        assert len(result.failures) == 1
        assert result.failures[0].kind == FailureKind.SPAWN_ERROR
        assert result.failures[0].message == "Executable not found: jestx"

    def test_timeout_keeps_partial_output(self, classifier: ResultClassifier) -> None:
        output = "PASS src/a.test.js\n  ✓ works (3 ms)\n"

        result = classifier.classify("app", output, -15, 30.0, outcome=RunOutcome.TIMED_OUT)

        assert not result.success
        assert [f.kind for f in result.failures] == [FailureKind.TIMEOUT_ERROR]
        assert "30.0s" in result.failures[0].message
        assert result.raw_output == output

    def test_timeout_record_comes_first(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", JEST_FAILURE, -9, 60.0, outcome=RunOutcome.TIMED_OUT)

        assert result.failures[0].kind == FailureKind.TIMEOUT_ERROR
        assert result.failures[1].kind == FailureKind.ASSERTION_FAILURE

    def test_timeout_with_no_output(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", "", -15, 5.0, outcome=RunOutcome.TIMED_OUT)

        assert [f.kind for f in result.failures] == [FailureKind.TIMEOUT_ERROR]

    def test_cancelled_run_is_not_success(self, classifier: ResultClassifier) -> None:
        result = classifier.classify(
            "app", "Tests: 2 passed, 2 total\n", 0, 1.0, outcome=RunOutcome.CANCELLED
        )

        assert not result.success
        assert result.outcome == RunOutcome.CANCELLED
        assert not result.has_kind(FailureKind.TIMEOUT_ERROR)

    def test_empty_output_nonzero_exit(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", "  \n", 127, 0.1)

        assert not result.success
        assert result.failures[0].kind == FailureKind.RUNTIME_ERROR
        assert "127" in result.failures[0].message

    def test_empty_output_zero_exit(self, classifier: ResultClassifier) -> None:
        result = classifier.classify("app", "", 0, 0.1)

        assert result.success
        assert result.failures == ()


class TestTimings:
    def test_jest_and_go_timings(self, classifier: ResultClassifier) -> None:
        jest = classifier.classify("a", "  ✓ renders (1200 ms)\nPASS src/b.test.js (2.5 s)\n", 0, 3.0)
        go = classifier.classify("b", GO_FAILURE, 1, 0.1)

        assert {(t.name, t.seconds, t.scope) for t in jest.timings} == {
            ("renders", 1.2, "test"),
            ("src/b.test.js", 2.5, "file"),
        }
        assert ("example.com/calc", 0.005, "file") in {
            (t.name, t.seconds, t.scope) for t in go.timings
        }


class TestExtensibility:
    def test_custom_dialect(self) -> None:
        """A new runner is supported by registering a dialect, not by code changes."""
        import re

        registry = DialectRegistry()
        registry.register(
            Dialect(
                name="tap",
                counter_lines=((re.compile(r"^# (?P<body>\d+ \w+)$"), "tests"),),
                failure_markers=(FailureMarker(pattern=re.compile(r"^not ok \d+ - (?P<title>.+)$")),),
                summary_boundary=(re.compile(r"^# \d+"),),
            )
        )
        output = "ok 1 - adds\nnot ok 2 - subtracts\n  expected 1 got 2\n# 1 failed\n"

        result = ResultClassifier(registry).classify("tap", output, 1, 0.1)

        assert result.dialects == ("tap",)
        assert result.statistics.tests_failed == 1
        assert result.failures[0].test_name == "subtracts"
        assert result.failures[0].message == "expected 1 got 2"

    def test_never_raises_on_garbage(self, classifier: ResultClassifier) -> None:
        garbage = "\x00�" * 50 + "\n● \n____ ____\n--- FAIL:  (x)\n1) \n"

        result = classifier.classify("app", garbage, 1, 0.0)

        assert not result.success
