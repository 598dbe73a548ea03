"""Shared rendering for run and classify."""

import json
from pathlib import Path

import click

from testscope.capture.models import DiagnosticReport, TestResult
from testscope.core.progress import status


def emit(
    result: TestResult,
    report: DiagnosticReport,
    *,
    output: Path | None,
    as_json: bool,
) -> None:
    """Write the report (or JSON) to a file or stdout, then print the banner."""
    if as_json:
        payload = result.to_dict()
        payload["report"] = {s.name: s.body for s in report.sections}
        text = json.dumps(payload, indent=2) + "\n"
    else:
        text = report.text

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text)
        status(f"Report written to {output}", style="success")
    else:
        click.echo(text, nl=False)

    status(result.one_line_summary(), style="success" if result.success else "error")
