"""Result classification.

Turns normalized runner output plus an exit code into a TestResult.

Three independent signals feed the verdict:
- summary counters, parsed from a tolerant table of phrasings
- suite-collapse markers (the run never executed countable tests)
- per-failure blocks, extracted between failure markers

Exit code is authoritative: nonzero always means failure, whatever the
counters say. Parsing never raises; unrecognized output degrades to
unknown statistics.
"""

from __future__ import annotations

import re
import textwrap
from dataclasses import dataclass, field
from typing import Literal

import structlog

from testscope.capture.dialects import (
    COUNT_PHRASE_RE,
    COUNTER_WORDS,
    TRAILING_TOTAL_RE,
    Dialect,
    DialectRegistry,
    FailureMarker,
    dialect_registry,
)
from testscope.capture.models import (
    FailureKind,
    FailureRecord,
    RunOutcome,
    SourceLocation,
    TestResult,
    TestStatistics,
    TestTiming,
)
from testscope.config.constants import (
    COLLAPSE_CONTEXT_LINES,
    LIBRARY_PATH_MARKERS,
    MAX_BODY_LINES,
)

log = structlog.get_logger(__name__)

# Blocks whose title names a whole file rather than a test
_SUITE_LEVEL_TITLE_RE = re.compile(r"Test suite failed to run|^ERROR collecting\s*(?P<file>\S*)")

# Stack frames
_JS_FRAME_RE = re.compile(r"^\s*at\s+(?:.*?\()?(?P<file>[^()\s]+?):(?P<line>\d+)(?::\d+)?\)?\s*$")
_JS_FRAME_START_RE = re.compile(r"^\s*at\s+\S")
_PY_FRAME_RE = re.compile(r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)')
_GO_FRAME_RE = re.compile(r"^\s+(?P<file>/\S+\.go):(?P<line>\d+)")
_GO_GOROUTINE_RE = re.compile(r"^goroutine \d+ \[")
_PY_TRACEBACK_RE = re.compile(r"^\s*Traceback \(most recent call last\)")
_VITEST_FRAME_RE = re.compile(r"^\s*❯\s+(?P<file>[^\s:]+):(?P<line>\d+)")

_FRAME_PATTERNS = (_JS_FRAME_RE, _PY_FRAME_RE, _GO_FRAME_RE, _VITEST_FRAME_RE)

# "path/file.ext:12" or tsc "file.ts(12,5)" at line start
_BODY_LOCATION_RE = re.compile(
    r"^\s*(?P<file>[\w./\\@-]+\.(?:py|pyi|js|jsx|mjs|cjs|ts|tsx|mts|go|rb|rs|java|kt|cs|php|vue|svelte))"
    r"(?::|\()(?P<line>\d+)"
)

# Lines that end a failure body without being stack frames
_BODY_STOP_RE = re.compile(r"^\s*(?:[-_=⎯]{3,}(?:\s|$)|(?:FAIL|PASS|ok)\s*$)")

# Jest/vitest code frame: "  10 |   code", "> 11 |   code", "     |   ^"
_CODE_FRAME_RE = re.compile(r"^\s*>?\s*\d*\s*\|")

_ASSERTION_RE = re.compile(
    r"AssertionError|\bassert\b|expect\(|Expected|Received|toBe|toEqual|"
    r"\bshould\b|expected .* (?:to|got)|got .*, want"
)
_ERROR_TYPE_RE = re.compile(r"\b(?:[A-Z]\w*(?:Error|Exception)|panic)\b:?")
_PYTEST_ERROR_LINE_RE = re.compile(r"^E\s+")

_COMPILE_HINT_RE = re.compile(
    r"Cannot find module|Module not found|ModuleNotFoundError|ImportError|"
    r"SyntaxError|error TS\d+|\[build failed\]|cannot find package|undefined:"
)


@dataclass
class _Block:
    """A failure block under construction."""

    marker: FailureMarker
    title: str
    start: int
    current_file: str | None
    lines: list[str] = field(default_factory=list)


@dataclass
class _Collapse:
    index: int
    kind: FailureKind
    line: str


class ResultClassifier:
    """Classifies normalized output. Stateless and safe to share."""

    def __init__(self, registry: DialectRegistry | None = None) -> None:
        self._registry = registry or dialect_registry

    def classify(
        self,
        target: str,
        output: str,
        exit_code: int | None,
        duration_seconds: float,
        *,
        outcome: RunOutcome = RunOutcome.COMPLETED,
        spawn_error: str | None = None,
    ) -> TestResult:
        """Build a TestResult. Never raises for any output text."""
        if outcome == RunOutcome.SPAWN_FAILED:
            return TestResult(
                target=target,
                success=False,
                statistics=TestStatistics(),
                failures=(
                    FailureRecord(
                        kind=FailureKind.SPAWN_ERROR,
                        message=spawn_error or "Process failed to start",
                    ),
                ),
                raw_output=output,
                exit_code=exit_code,
                duration_seconds=duration_seconds,
                outcome=outcome,
            )

        if not output.strip():
            return self._classify_empty(target, output, exit_code, duration_seconds, outcome)

        try:
            return self._classify_text(target, output, exit_code, duration_seconds, outcome)
        except Exception:
            # Degrade to unknown statistics rather than fail the caller
            log.warning("classify_parse_failed", target=target, exc_info=True)
            failures: list[FailureRecord] = []
            if outcome == RunOutcome.TIMED_OUT:
                failures.append(_timeout_record(duration_seconds))
            return TestResult(
                target=target,
                success=exit_code == 0 and outcome == RunOutcome.COMPLETED,
                statistics=TestStatistics(),
                failures=tuple(failures),
                raw_output=output,
                exit_code=exit_code,
                duration_seconds=duration_seconds,
                outcome=outcome,
            )

    # -------------------------------------------------------------------------
    # Empty output
    # -------------------------------------------------------------------------

    def _classify_empty(
        self,
        target: str,
        output: str,
        exit_code: int | None,
        duration_seconds: float,
        outcome: RunOutcome,
    ) -> TestResult:
        failures: list[FailureRecord] = []
        if outcome == RunOutcome.TIMED_OUT:
            failures.append(_timeout_record(duration_seconds))
        elif outcome == RunOutcome.COMPLETED and exit_code != 0:
            failures.append(
                FailureRecord(
                    kind=FailureKind.RUNTIME_ERROR,
                    message=f"Process exited with code {exit_code} and produced no output",
                )
            )
        return TestResult(
            target=target,
            success=exit_code == 0 and outcome == RunOutcome.COMPLETED,
            statistics=TestStatistics(),
            failures=tuple(failures),
            raw_output=output,
            exit_code=exit_code,
            duration_seconds=duration_seconds,
            outcome=outcome,
        )

    # -------------------------------------------------------------------------
    # Full parse
    # -------------------------------------------------------------------------

    def _classify_text(
        self,
        target: str,
        output: str,
        exit_code: int | None,
        duration_seconds: float,
        outcome: RunOutcome,
    ) -> TestResult:
        lines = output.splitlines()
        dialects = self._registry.all()
        seen: set[str] = set()

        stats = _parse_statistics(lines, dialects, seen)
        collapses = _detect_collapse(lines, dialects)
        blocks, suite_results = _extract_blocks(lines, dialects, seen)
        timings = _extract_timings(lines, dialects)

        records = _dedupe([_block_to_record(b) for b in _drop_empty_parents(blocks)])
        if not records:
            records = _dedupe(_summary_records(lines, dialects, seen))

        if collapses and not any(
            r.kind in (FailureKind.COMPILATION_ERROR, FailureKind.SUITE_SETUP_FAILURE)
            for r in records
        ):
            records.insert(0, _collapse_record(lines, collapses, blocks))

        if collapses and stats.tests_total is None:
            stats = _replace_stats(stats, tests_total=0)

        test_level = sum(1 for r in records if r.is_test_level)
        counted = max(stats.tests_failed or 0, test_level) + (stats.suites_failed or 0)

        if outcome == RunOutcome.TIMED_OUT:
            records.insert(0, _timeout_record(duration_seconds))

        success = (
            exit_code == 0
            and outcome == RunOutcome.COMPLETED
            and not collapses
            and counted == 0
        )

        log.debug(
            "classified",
            target=target,
            success=success,
            exit_code=exit_code,
            failures=len(records),
            collapse=bool(collapses),
            ambiguous=stats.is_ambiguous,
        )

        return TestResult(
            target=target,
            success=success,
            statistics=stats,
            failures=tuple(records),
            raw_output=output,
            exit_code=exit_code,
            duration_seconds=duration_seconds,
            outcome=outcome,
            collapse_detected=bool(collapses),
            timings=tuple(timings),
            suite_results=tuple(suite_results),
            dialects=tuple(d.name for d in dialects if d.name in seen),
        )


# =============================================================================
# Statistics
# =============================================================================

_STAT_FIELDS = (
    "suites_passed",
    "suites_failed",
    "suites_total",
    "tests_passed",
    "tests_failed",
    "tests_skipped",
    "tests_total",
)


def _parse_counter_body(body: str, scope: Literal["tests", "suites"], counts: dict[str, int]) -> bool:
    """Parse "1 failed, 4 passed, 5 total" or "1 failed | 4 passed (5)"."""
    found = False
    explicit_total = False
    trailing = TRAILING_TOTAL_RE.search(body)
    if trailing:
        body = body[: trailing.start()]
    for fragment in re.split(r"[,|]", body):
        match = COUNT_PHRASE_RE.search(fragment)
        if not match:
            continue
        suffix = COUNTER_WORDS.get(match.group(2).lower())
        if suffix is None:
            continue
        key = f"{scope}_{suffix}"
        if key not in _STAT_FIELDS:
            continue
        counts[key] = counts.get(key, 0) + int(match.group(1))
        explicit_total = explicit_total or suffix == "total"
        found = True
    if trailing and not explicit_total:
        key = f"{scope}_total"
        counts[key] = counts.get(key, 0) + int(trailing.group(1))
        found = True
    return found


def _parse_elapsed(match: re.Match[str]) -> float:
    groups = match.groupdict()
    if groups.get("seconds") is not None:
        return float(groups["seconds"])
    return float(groups["ms"]) / 1000.0


def _parse_statistics(lines: list[str], dialects: list[Dialect], seen: set[str]) -> TestStatistics:
    """Sum counters across every recognized summary line.

    Counters never found stay None. Elapsed time prefers runner-specific
    phrasings over generic wrappers ("Done in 4.2s").
    """
    counts: dict[str, int] = {}
    elapsed: dict[str, float] = {}

    for line in lines:
        for dialect in dialects:
            matched = False
            for pattern, scope in dialect.counter_lines:
                m = pattern.match(line)
                if m and _parse_counter_body(m.group("body"), scope, counts):
                    matched = True
                    break
            if not matched:
                for pattern in dialect.counter_phrases:
                    m = pattern.match(line)
                    if m:
                        suffix = COUNTER_WORDS.get(m.group("word").lower())
                        if suffix:
                            key = f"tests_{suffix}"
                            counts[key] = counts.get(key, 0) + int(m.group("count"))
                            matched = True
                        break
            for pattern in dialect.elapsed_patterns:
                m = pattern.match(line)
                if m:
                    elapsed[dialect.name] = elapsed.get(dialect.name, 0.0) + _parse_elapsed(m)
                    break
            if matched:
                seen.add(dialect.name)
                break

    elapsed_seconds: float | None = None
    specific = [v for name, v in elapsed.items() if name != "generic"]
    if specific:
        elapsed_seconds = round(specific[0], 3)
    elif "generic" in elapsed:
        elapsed_seconds = round(elapsed["generic"], 3)

    return TestStatistics(
        **{name: counts.get(name) for name in _STAT_FIELDS},
        elapsed_seconds=elapsed_seconds,
    )


def _replace_stats(stats: TestStatistics, **changes: int | None) -> TestStatistics:
    values = {name: getattr(stats, name) for name in _STAT_FIELDS}
    values.update(changes)
    return TestStatistics(**values, elapsed_seconds=stats.elapsed_seconds)


# =============================================================================
# Collapse
# =============================================================================


def _is_test_result_line(line: str, dialects: list[Dialect]) -> bool:
    """A per-test result line such as "✓ name (3 ms)" or "--- PASS: TestX"."""
    for dialect in dialects:
        for pattern, scope in (*dialect.progress_markers, *dialect.timing_patterns):
            if scope == "test" and pattern.search(line):
                return True
    return False


def _detect_collapse(lines: list[str], dialects: list[Dialect]) -> list[_Collapse]:
    found: list[_Collapse] = []
    for index, line in enumerate(lines):
        # Test titles may quote a banner ("✓ reports Cannot find module errors")
        if _is_test_result_line(line, dialects):
            continue
        for dialect in dialects:
            hit = next(
                (kind for pattern, kind in dialect.collapse_markers if pattern.search(line)),
                None,
            )
            if hit is not None:
                found.append(_Collapse(index=index, kind=hit, line=line.strip()))
                break
    return found


def _collapse_record(
    lines: list[str], collapses: list[_Collapse], blocks: list[_Block]
) -> FailureRecord:
    """Synthesize one record for a collapse that no failure block described."""
    compile_hits = [c for c in collapses if c.kind == FailureKind.COMPILATION_ERROR]
    first = compile_hits[0] if compile_hits else collapses[0]
    kind = FailureKind.COMPILATION_ERROR if compile_hits else FailureKind.SUITE_SETUP_FAILURE

    context = [first.line]
    for line in lines[first.index + 1 : first.index + 1 + COLLAPSE_CONTEXT_LINES]:
        if line.strip():
            context.append(line.strip())

    suite_name = None
    collecting = re.search(r"ERROR collecting\s+(\S+)", first.line)
    if collecting:
        suite_name = collecting.group(1)
    else:
        enclosing = [b for b in blocks if b.start <= first.index]
        if enclosing:
            suite_name = enclosing[-1].current_file

    window = lines[max(0, first.index - 1) : first.index + 1 + COLLAPSE_CONTEXT_LINES]
    return FailureRecord(
        kind=kind,
        message="\n".join(context),
        suite_name=suite_name,
        location=_find_location(window),
    )


# =============================================================================
# Failure Blocks
# =============================================================================


def _match_marker(
    line: str, dialects: list[Dialect], activated: set[int]
) -> tuple[FailureMarker, str | None, str] | None:
    """Match a block start. A skipped title ("● Console") yields title None."""
    for dialect in dialects:
        for marker in dialect.failure_markers:
            if marker.active_after is not None and id(marker) not in activated:
                continue
            m = marker.pattern.match(line)
            if not m:
                continue
            title = m.group("title").strip()
            if any(title.startswith(skip) for skip in marker.skip_titles):
                return marker, None, dialect.name
            return marker, title, dialect.name
    return None


def _match_file_header(line: str, dialects: list[Dialect]) -> tuple[str, str, str] | None:
    for dialect in dialects:
        for pattern in dialect.file_headers:
            m = pattern.match(line)
            if m:
                status = "PASS" if m.group("status") in ("PASS", "ok") else "FAIL"
                return status, m.group("file"), dialect.name
    return None


def _is_boundary(line: str, dialects: list[Dialect]) -> bool:
    return any(p.match(line) for d in dialects for p in d.summary_boundary)


def _extract_blocks(
    lines: list[str], dialects: list[Dialect], seen: set[str]
) -> tuple[list[_Block], list[tuple[str, str]]]:
    """Split output into failure blocks.

    A block starts at a failure marker and ends at the next marker, a
    per-file result line, or a summary boundary.
    """
    blocks: list[_Block] = []
    suite_status: dict[str, str] = {}
    current: _Block | None = None
    current_file: str | None = None
    activated: set[int] = set()
    gated = [
        m for d in dialects for m in d.failure_markers if m.active_after is not None
    ]

    index = 0
    while index < len(lines):
        line = lines[index]
        for marker in gated:
            if marker.active_after is not None and marker.active_after.match(line):
                activated.add(id(marker))

        hit = _match_marker(line, dialects, activated)
        if hit is not None:
            marker, title, dialect_name = hit
            if title is None:
                current = None
                index += 1
                continue
            seen.add(dialect_name)
            if marker.title_continues:
                title, index = _continue_title(lines, index, title)
            current = _Block(marker=marker, title=title, start=index, current_file=current_file)
            blocks.append(current)
            index += 1
            continue

        header = _match_file_header(line, dialects)
        if header is not None:
            status, file, dialect_name = header
            seen.add(dialect_name)
            suite_status[file] = status
            current_file = file
            current = None
        elif _is_boundary(line, dialects):
            current = None
        elif current is not None:
            current.lines.append(line)
        index += 1

    return blocks, [(status, file) for file, status in suite_status.items()]


def _continue_title(lines: list[str], index: int, title: str) -> tuple[str, int]:
    """Join a wrapped title ("Array" / "#indexOf()" / "returns -1:")."""
    parts = [title]
    limit = index + 6
    while not parts[-1].endswith(":") and index + 1 < len(lines) and index < limit:
        nxt = lines[index + 1].strip()
        if not nxt:
            break
        parts.append(nxt)
        index += 1
    parts[-1] = parts[-1].rstrip(":").strip()
    return " › ".join(parts), index


def _split_title(title: str, separator: str | None) -> list[str]:
    """Split a title on separator, ignoring separators inside [param] ids."""
    if not separator:
        return [title]
    parts: list[str] = []
    depth = 0
    buf = ""
    i = 0
    while i < len(title):
        ch = title[i]
        if ch == "[":
            depth += 1
        elif ch == "]" and depth:
            depth -= 1
        if depth == 0 and title.startswith(separator, i):
            parts.append(buf)
            buf = ""
            i += len(separator)
            continue
        buf += ch
        i += 1
    parts.append(buf)
    return [p.strip() for p in parts if p.strip()] or [title]


def _drop_empty_parents(blocks: list[_Block]) -> list[_Block]:
    """Drop a parent test block with no body whose subtests have their own blocks."""
    kept: list[_Block] = []
    for i, block in enumerate(blocks):
        sep = block.marker.separator
        has_body = any(line.strip() for line in block.lines)
        if not has_body and sep and any(
            other.title.startswith(block.title + sep) for other in blocks[i + 1 :]
        ):
            continue
        kept.append(block)
    return kept


def _split_body(lines: list[str]) -> tuple[list[str], list[str]]:
    """Split block lines into message body and stack trace."""
    body: list[str] = []
    for i, line in enumerate(lines):
        if (
            _JS_FRAME_START_RE.match(line)
            or _PY_FRAME_RE.match(line)
            or _PY_TRACEBACK_RE.match(line)
            or _GO_GOROUTINE_RE.match(line)
            or _VITEST_FRAME_RE.match(line)
        ):
            return body, lines[i:]
        if _BODY_STOP_RE.match(line):
            return body, []
        if _CODE_FRAME_RE.match(line):
            continue
        body.append(line)
    return body, []


def _trim_message(body: list[str]) -> str:
    text = textwrap.dedent("\n".join(body[:MAX_BODY_LINES]))
    trimmed = [line.rstrip() for line in text.splitlines()]
    while trimmed and not trimmed[0]:
        trimmed.pop(0)
    while trimmed and not trimmed[-1]:
        trimmed.pop()
    # Collapse runs of blank lines
    result: list[str] = []
    for line in trimmed:
        if not line and result and not result[-1]:
            continue
        result.append(line)
    return "\n".join(result)


def _is_library(path: str) -> bool:
    return any(marker in path for marker in LIBRARY_PATH_MARKERS)


def _find_location(lines: list[str]) -> SourceLocation | None:
    """First non-library stack frame, else the first file:line in the body."""
    for line in lines:
        for pattern in _FRAME_PATTERNS:
            m = pattern.match(line)
            if m and not _is_library(m.group("file")):
                return SourceLocation(file=m.group("file"), line=int(m.group("line")))
    for line in lines:
        m = _BODY_LOCATION_RE.match(line)
        if m and not _is_library(m.group("file")):
            return SourceLocation(file=m.group("file"), line=int(m.group("line")))
    return None


def _kind_for(message: str, title: str) -> FailureKind:
    error_lines = [
        line for line in message.splitlines() if _PYTEST_ERROR_LINE_RE.match(line)
    ]
    text = "\n".join(error_lines) if error_lines else message
    if _SUITE_LEVEL_TITLE_RE.search(title):
        return (
            FailureKind.COMPILATION_ERROR
            if _COMPILE_HINT_RE.search(message)
            else FailureKind.SUITE_SETUP_FAILURE
        )
    if _ASSERTION_RE.search(text):
        return FailureKind.ASSERTION_FAILURE
    if _ERROR_TYPE_RE.search(text):
        return FailureKind.RUNTIME_ERROR
    return FailureKind.ASSERTION_FAILURE


def _block_to_record(block: _Block) -> FailureRecord:
    body, stack = _split_body(block.lines)
    message = _trim_message(body) or block.title
    location = _find_location(stack) or _find_location(body)
    kind = _kind_for(message, block.title)

    suite_level = _SUITE_LEVEL_TITLE_RE.search(block.title)
    if suite_level:
        suite_name = suite_level.group("file") or block.current_file
        return FailureRecord(
            kind=kind,
            message=message,
            suite_name=suite_name,
            location=location,
        )

    parts = _split_title(block.title, block.marker.separator)
    file = block.current_file
    if block.marker.file_first and len(parts) > 1:
        file, parts = parts[0], parts[1:]
    test_name = parts[-1]
    suite_name = (block.marker.separator or " › ").join(parts[:-1]) or file
    return FailureRecord(
        kind=kind,
        message=message,
        test_name=test_name,
        suite_name=suite_name,
        location=location,
    )


def _summary_records(
    lines: list[str], dialects: list[Dialect], seen: set[str]
) -> list[FailureRecord]:
    """Records from summary-only listings ("FAILED a.py::test_x - msg")."""
    records: list[FailureRecord] = []
    for line in lines:
        for dialect in dialects:
            for pattern in dialect.summary_failures:
                m = pattern.match(line)
                if not m:
                    continue
                seen.add(dialect.name)
                parts = m.group("title").split("::")
                message = (m.groupdict().get("message") or "").strip()
                test_name = parts[-1]
                suite_name = ("::".join(parts[1:-1]) or parts[0]) if len(parts) > 1 else None
                kind = _kind_for(message, test_name) if message else FailureKind.ASSERTION_FAILURE
                records.append(
                    FailureRecord(
                        kind=kind,
                        message=message or "failed",
                        test_name=test_name,
                        suite_name=suite_name,
                        location=SourceLocation(file=parts[0]) if len(parts) > 1 else None,
                    )
                )
    return records


def _dedupe(records: list[FailureRecord]) -> list[FailureRecord]:
    """Keep the first record per (test, suite); later ones are retries."""
    seen: set[tuple[str | None, str | None, FailureKind | None]] = set()
    result: list[FailureRecord] = []
    for record in records:
        key = (
            record.test_name,
            record.suite_name,
            None if record.test_name else record.kind,
        )
        if key in seen:
            continue
        seen.add(key)
        result.append(record)
    return result


def _timeout_record(duration_seconds: float) -> FailureRecord:
    return FailureRecord(
        kind=FailureKind.TIMEOUT_ERROR,
        message=f"Run did not finish within its timeout and was stopped after {duration_seconds:.1f}s",
    )


# =============================================================================
# Timings
# =============================================================================


def _extract_timings(lines: list[str], dialects: list[Dialect]) -> list[TestTiming]:
    timings: dict[tuple[str, str], TestTiming] = {}
    for line in lines:
        for dialect in dialects:
            for pattern, scope in dialect.timing_patterns:
                m = pattern.match(line)
                if not m:
                    continue
                name = m.group("name").strip()
                key = (name, scope)
                if key not in timings:
                    timings[key] = TestTiming(name=name, seconds=_parse_elapsed(m), scope=scope)
    return list(timings.values())
