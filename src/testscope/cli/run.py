"""tscope run command - run a test command and report on it."""

import asyncio
from pathlib import Path

import click

from testscope.capture.models import CaptureOutcome, TestRunRequest
from testscope.capture.session import CaptureSession
from testscope.cli.output import emit
from testscope.cli.utils import apply_logging_config
from testscope.config.loader import load_config
from testscope.config.models import TestScopeConfig
from testscope.core.errors import ConfigError
from testscope.core.logging import get_logger
from testscope.core.progress import live_status, pluralize

log = get_logger("cli.run")

_POLL_INTERVAL_SEC = 0.2


async def _run(request: TestRunRequest, config: TestScopeConfig) -> CaptureOutcome:
    session = CaptureSession(config)
    try:
        session_id = await session.begin(request)
        with live_status(f"Running {request.target}") as update:
            waiter = asyncio.ensure_future(session.wait(session_id))
            while not waiter.done():
                await asyncio.wait({waiter}, timeout=_POLL_INTERVAL_SEC)
                progress = session.progress(session_id)
                update(
                    f"Running {request.target}: "
                    f"{pluralize(progress.files_completed, 'file')}, "
                    f"{pluralize(progress.tests_completed, 'test')}"
                )
        return await session.end(session_id)
    finally:
        await session.shutdown()


@click.command(context_settings={"ignore_unknown_options": True})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("-t", "--target", default=None, help="Target label (default: cwd name)")
@click.option(
    "--cwd",
    default=".",
    type=click.Path(file_okay=False, path_type=Path),
    help="Working directory for the test command",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Timeout in seconds",
)
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
def run_command(
    command: tuple[str, ...],
    target: str | None,
    cwd: Path,
    timeout: float | None,
    output: Path | None,
    as_json: bool,
    config_file: Path | None,
) -> None:
    """Run COMMAND and print a diagnostic report.

    Put the test command after "--", e.g. tscope run -- npx jest src/
    Exits 0 when the run passed and 1 otherwise.
    """
    cwd = cwd.resolve()
    try:
        config = load_config(repo_root=cwd if cwd.is_dir() else None, config_file=config_file)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    apply_logging_config(config)

    request = TestRunRequest(
        argv=list(command),
        cwd=cwd,
        target=target or cwd.name or "default",
        timeout_sec=timeout,
    )
    log.debug("run_command", command=request.command_line, cwd=str(cwd))
    outcome = asyncio.run(_run(request, config))

    emit(outcome.result, outcome.report, output=output, as_json=as_json)
    raise SystemExit(0 if outcome.result.success else 1)
