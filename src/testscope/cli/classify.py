"""tscope classify command - classify a saved test log."""

from pathlib import Path

import click

from testscope.capture.classifier import ResultClassifier
from testscope.capture.models import ReportContext
from testscope.capture.normalizer import normalize
from testscope.capture.report import ReportSynthesizer, raw_excerpt
from testscope.cli.output import emit
from testscope.cli.utils import apply_logging_config
from testscope.config.loader import load_config
from testscope.core.errors import ConfigError


@click.command()
@click.argument("logfile", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--exit-code", type=int, required=True, help="Exit code of the logged run")
@click.option("-t", "--target", default="default", help="Target label for the report")
@click.option("--command", "command_line", default="(unknown)", help="Command that produced the log")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the report to this file instead of stdout",
)
@click.option("--json", "as_json", is_flag=True, help="Output result as JSON")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Extra YAML config layered over .testscope/config.yaml",
)
def classify_command(
    logfile: Path,
    exit_code: int,
    target: str,
    command_line: str,
    output: Path | None,
    as_json: bool,
    config_file: Path | None,
) -> None:
    """Classify LOGFILE, captured output of an earlier run.

    Exits 0 when the logged run passed and 1 otherwise.
    """
    try:
        config = load_config(config_file=config_file)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    apply_logging_config(config)

    text = normalize(logfile.read_text(encoding="utf-8", errors="replace"))
    result = ResultClassifier().classify(target, text, exit_code, 0.0)
    context = ReportContext(
        command=command_line,
        target=target,
        raw_excerpt=raw_excerpt(text, config.report.raw_excerpt_lines),
    )
    report = ReportSynthesizer(config.report).synthesize(result, context)

    emit(result, report, output=output, as_json=as_json)
    raise SystemExit(0 if result.success else 1)
