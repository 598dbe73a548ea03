"""testscope CLI - tscope command."""

import click

from testscope import __version__
from testscope.cli.classify import classify_command
from testscope.cli.run import run_command
from testscope.core.logging import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="tscope")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """testscope - Run test commands and turn their output into a diagnostic report."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(level="DEBUG" if verbose else "WARNING")


cli.add_command(run_command, name="run")
cli.add_command(classify_command, name="classify")


if __name__ == "__main__":
    cli()
