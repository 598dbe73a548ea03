"""Test-runner output dialects.

A dialect is a table of recognized phrasings for one runner family: where
summary counters live, what marks the start of a failure block, which
banners mean the suite collapsed before running. The classifier consults
every registered dialect; none of them is required to match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from testscope.capture.models import FailureKind

CounterScope = Literal["tests", "suites"]

# Counter words mapped to the statistics field suffix
COUNTER_WORDS: dict[str, str] = {
    "passed": "passed",
    "passing": "passed",
    "pass": "passed",
    "ok": "passed",
    "failed": "failed",
    "failing": "failed",
    "fail": "failed",
    "failures": "failed",
    "errors": "failed",
    "error": "failed",
    "skipped": "skipped",
    "skip": "skipped",
    "pending": "skipped",
    "todo": "skipped",
    "xfailed": "skipped",
    "deselected": "skipped",
    "total": "total",
}

# "4 passed", "2 of 10 total"
COUNT_PHRASE_RE = re.compile(r"(\d+)\s+(?:of\s+\d+\s+)?([A-Za-z]+)")
TRAILING_TOTAL_RE = re.compile(r"\((\d+)\)\s*$")


@dataclass(frozen=True)
class FailureMarker:
    """A per-test failure block start.

    ``pattern`` must define a ``title`` group. ``separator`` splits the title
    into describe path and test name (last element is the test).
    """

    pattern: re.Pattern[str]
    separator: str | None = None
    skip_titles: tuple[str, ...] = ()
    file_first: bool = False  # First title element is the test file
    title_continues: bool = False  # Title wraps onto following lines until one ends in ":"
    active_after: re.Pattern[str] | None = None  # Only match once this line was seen


@dataclass(frozen=True)
class Dialect:
    """Recognized phrasings for one runner family."""

    name: str
    # Lines holding comma/pipe separated "N word" counters, by scope
    counter_lines: tuple[tuple[re.Pattern[str], CounterScope], ...] = ()
    # Standalone "N word" lines (mocha: "5 passing (20ms)")
    counter_phrases: tuple[re.Pattern[str], ...] = ()
    # Elapsed time; group "seconds" or "ms"
    elapsed_patterns: tuple[re.Pattern[str], ...] = ()
    collapse_markers: tuple[tuple[re.Pattern[str], FailureKind], ...] = ()
    failure_markers: tuple[FailureMarker, ...] = ()
    # Summary-only failure listings, used when no block marker matched
    summary_failures: tuple[re.Pattern[str], ...] = ()
    # Per-file result lines; groups "status" (PASS/FAIL) and "file"
    file_headers: tuple[re.Pattern[str], ...] = ()
    # Per-test or per-file durations; groups "name" and "seconds" or "ms"
    timing_patterns: tuple[tuple[re.Pattern[str], Literal["test", "file"]], ...] = ()
    # Completed test/file markers for live progress; group "status"
    progress_markers: tuple[tuple[re.Pattern[str], Literal["test", "file"]], ...] = ()
    # Lines after which failure blocks stop (summary boundary)
    summary_boundary: tuple[re.Pattern[str], ...] = field(default_factory=tuple)


def _re(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


# =============================================================================
# Generic (all runners)
# =============================================================================

GENERIC = Dialect(
    name="generic",
    counter_lines=(
        (_re(r"^\s*(?P<body>\d+ (?:passed|failed|skipped|total)(?:\s*[,|]\s*\d+ \w+)*)\s*$"), "tests"),
        (_re(r"^\s*Suites:\s+(?P<body>.+)$"), "suites"),
    ),
    collapse_markers=(
        (_re(r"Test suite failed to run"), FailureKind.SUITE_SETUP_FAILURE),
        (_re(r"must contain at least one test"), FailureKind.SUITE_SETUP_FAILURE),
        (_re(r"No tests? (?:files )?found"), FailureKind.SUITE_SETUP_FAILURE),
        (_re(r"Cannot find module"), FailureKind.COMPILATION_ERROR),
        (_re(r"Module not found"), FailureKind.COMPILATION_ERROR),
        (_re(r"ModuleNotFoundError"), FailureKind.COMPILATION_ERROR),
        (_re(r"^\s*SyntaxError:"), FailureKind.COMPILATION_ERROR),
        (_re(r"error TS\d+"), FailureKind.COMPILATION_ERROR),
    ),
    elapsed_patterns=(
        _re(r"^\s*(?:Ran|Done|Finished) in (?P<seconds>\d+(?:\.\d+)?)\s*s\b"),
    ),
)

# =============================================================================
# Jest
# =============================================================================

JEST = Dialect(
    name="jest",
    counter_lines=(
        (_re(r"^\s*Tests:\s+(?P<body>.+)$"), "tests"),
        (_re(r"^\s*Test Suites:\s+(?P<body>.+)$"), "suites"),
    ),
    elapsed_patterns=(_re(r"^\s*Time:\s+(?P<seconds>\d+(?:\.\d+)?)\s*s\b"),),
    failure_markers=(
        FailureMarker(
            pattern=_re(r"^\s*●\s+(?P<title>.+?)\s*$"),
            separator=" › ",
            skip_titles=("Console",),
        ),
    ),
    file_headers=(
        _re(r"^\s*(?P<status>PASS|FAIL)\s+(?P<file>\S+)(?:\s+\((?P<seconds>\d+(?:\.\d+)?)\s*s\))?"),
    ),
    timing_patterns=(
        (_re(r"^\s*[✓✕√×]\s+(?P<name>.+?)\s+\((?P<ms>\d+(?:\.\d+)?)\s*ms\)\s*$"), "test"),
        (_re(r"^\s*(?:PASS|FAIL)\s+(?P<name>\S+)\s+\((?P<seconds>\d+(?:\.\d+)?)\s*s\)"), "file"),
    ),
    progress_markers=(
        (_re(r"^\s*(?P<status>PASS|FAIL)\s+\S"), "file"),
        (_re(r"^\s*(?P<status>[✓✕√×])\s+\S"), "test"),
    ),
    summary_boundary=(_re(r"^\s*Test Suites:"), _re(r"^\s*Summary of all failing tests")),
)

# =============================================================================
# Vitest
# =============================================================================

VITEST = Dialect(
    name="vitest",
    counter_lines=(
        (_re(r"^\s*Tests\s{2,}(?P<body>.+)$"), "tests"),
        (_re(r"^\s*Test Files\s{2,}(?P<body>.+)$"), "suites"),
    ),
    elapsed_patterns=(
        _re(r"^\s*Duration\s+(?P<seconds>\d+(?:\.\d+)?)\s*s\b"),
        _re(r"^\s*Duration\s+(?P<ms>\d+(?:\.\d+)?)\s*ms\b"),
    ),
    failure_markers=(
        FailureMarker(
            pattern=_re(r"^\s*FAIL\s+(?P<title>\S+\s+>\s+.+?)\s*$"),
            separator=" > ",
            file_first=True,
        ),
    ),
    progress_markers=((_re(r"^\s*(?P<status>[✓×])\s+\S"), "test"),),
    summary_boundary=(_re(r"^\s*Test Files\s{2,}"),),
)

# =============================================================================
# pytest
# =============================================================================

PYTEST = Dialect(
    name="pytest",
    counter_lines=(
        (_re(r"^=+ (?P<body>(?:\d+ \w+(?:, )?)+) in \d+(?:\.\d+)?s(?: \([^)]*\))? =+$"), "tests"),
    ),
    elapsed_patterns=(_re(r"^=+ .* in (?P<seconds>\d+(?:\.\d+)?)s(?: \([^)]*\))? =+$"),),
    collapse_markers=(
        (_re(r"ERROR collecting"), FailureKind.COMPILATION_ERROR),
        (_re(r"errors? during collection"), FailureKind.COMPILATION_ERROR),
        (_re(r"^=+ no tests ran"), FailureKind.SUITE_SETUP_FAILURE),
    ),
    failure_markers=(
        FailureMarker(
            pattern=_re(r"^_{3,} (?P<title>.+?) _{3,}$"),
            separator=".",
        ),
    ),
    summary_failures=(_re(r"^FAILED (?P<title>\S+?)(?: - (?P<message>.*))?$"),),
    timing_patterns=(
        (_re(r"^(?P<seconds>\d+(?:\.\d+)?)s (?:call|setup|teardown)\s+(?P<name>\S+)"), "test"),
    ),
    progress_markers=((_re(r"::\S+ (?P<status>PASSED|FAILED)"), "test"),),
    summary_boundary=(_re(r"^=+ short test summary info =+$"),),
)

# =============================================================================
# Mocha
# =============================================================================

MOCHA = Dialect(
    name="mocha",
    counter_phrases=(
        _re(r"^\s*(?P<count>\d+) (?P<word>passing|failing|pending)\b"),
    ),
    elapsed_patterns=(
        _re(r"^\s*\d+ passing \((?P<ms>\d+)ms\)"),
        _re(r"^\s*\d+ passing \((?P<seconds>\d+)s\)"),
    ),
    failure_markers=(
        FailureMarker(
            pattern=_re(r"^\s{2}\d+\) (?P<title>.+?)\s*$"),
            separator=" › ",
            title_continues=True,
            active_after=_re(r"^\s*\d+ failing"),
        ),
    ),
    progress_markers=((_re(r"^\s*(?P<status>[✓✔]|\d+\))\s+\S"), "test"),),
)

# =============================================================================
# go test
# =============================================================================

GO = Dialect(
    name="go",
    collapse_markers=(
        (_re(r"\[build failed\]"), FailureKind.COMPILATION_ERROR),
        (_re(r"\[setup failed\]"), FailureKind.SUITE_SETUP_FAILURE),
    ),
    failure_markers=(
        FailureMarker(pattern=_re(r"^\s*--- FAIL: (?P<title>\S+) \(\d+(?:\.\d+)?s\)"), separator="/"),
    ),
    file_headers=(
        _re(r"^(?P<status>ok|FAIL)\s+(?P<file>\S+)\s+(?P<seconds>\d+(?:\.\d+)?)s"),
    ),
    timing_patterns=(
        (_re(r"^\s*--- (?:PASS|FAIL): (?P<name>\S+) \((?P<seconds>\d+(?:\.\d+)?)s\)"), "test"),
        (_re(r"^(?:ok|FAIL)\s+(?P<name>\S+)\s+(?P<seconds>\d+(?:\.\d+)?)s"), "file"),
    ),
    progress_markers=((_re(r"^\s*--- (?P<status>PASS|FAIL):"), "test"),),
)


# =============================================================================
# Registry
# =============================================================================


class DialectRegistry:
    """Registry of known output dialects, in registration order."""

    def __init__(self) -> None:
        self._dialects: dict[str, Dialect] = {}

    def register(self, dialect: Dialect) -> Dialect:
        """Register a dialect. Re-registering a name replaces it."""
        self._dialects[dialect.name] = dialect
        return dialect

    def get(self, name: str) -> Dialect | None:
        return self._dialects.get(name)

    def all(self) -> list[Dialect]:
        return list(self._dialects.values())


# Global registry instance
dialect_registry = DialectRegistry()
for _dialect in (GENERIC, JEST, VITEST, PYTEST, MOCHA, GO):
    dialect_registry.register(_dialect)
