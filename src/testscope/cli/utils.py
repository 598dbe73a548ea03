"""CLI utilities."""

import click

from testscope.config.models import TestScopeConfig
from testscope.core.logging import configure_logging


def apply_logging_config(config: TestScopeConfig) -> None:
    """Reconfigure logging from the loaded config.

    The root group's -v flag forces DEBUG over the configured level.
    """
    logging_config = config.logging
    ctx = click.get_current_context(silent=True)
    if ctx is not None and (ctx.find_root().obj or {}).get("verbose"):
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    configure_logging(config=logging_config)
