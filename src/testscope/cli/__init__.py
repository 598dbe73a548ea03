"""testscope CLI."""

from testscope.cli.main import cli

__all__ = ["cli"]
