"""User-facing progress feedback for CLI operations.

Design principles:
- Single line updates, no spam
- Graceful degradation in non-TTY (CI, pipes)
- Suppress structlog console output during spinners to avoid line collision

Usage::

    from testscope.core.progress import live_status, status

    status("Report written to out.txt", style="success")  # ✓ Report written ...

    with live_status("Running tests") as update:
        update("Running tests: 3 files, 40 tests")
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from rich.console import Console

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

_console = Console(stderr=True)

_STYLES = {
    "success": "[green]✓[/green] ",
    "error": "[red]✗[/red] ",
    "warning": "[yellow]![/yellow] ",
    "info": "  ",
    "none": "",
}

_suppress_console_logs = threading.local()


def is_console_suppressed() -> bool:
    """Check if console logging is currently suppressed."""
    return getattr(_suppress_console_logs, "active", False)


@contextmanager
def suppress_console_logs() -> Iterator[None]:
    """Suppress structlog console output; file handlers still receive logs."""
    _suppress_console_logs.active = True
    try:
        yield
    finally:
        _suppress_console_logs.active = False


def _get_logger() -> BoundLogger:
    """Get logger lazily to respect runtime config."""
    from testscope.core.logging import get_logger

    return get_logger("progress")


def _is_tty() -> bool:
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()


def get_console() -> Console:
    """Get the shared Rich console instance."""
    return _console


def status(message: str, *, style: str = "info", indent: int = 0) -> None:
    """Print a styled status message to stderr."""
    prefix = _STYLES.get(style, "")
    padding = " " * indent
    _console.print(f"{padding}{prefix}{message}", highlight=False)

    _get_logger().debug("status", message=message, style=style)


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    """Return "1 file" / "3 files"."""
    if plural is None:
        plural = singular + "s"
    word = singular if count == 1 else plural
    return f"{count} {word}"


@contextmanager
def live_status(message: str) -> Iterator[Callable[[str], None]]:
    """Spinner whose text can be updated, with console log suppression.

    Yields an ``update(text)`` callable. In non-TTY mode the initial message
    is printed once and updates are logged at DEBUG only.
    """
    if _is_tty():
        with (
            suppress_console_logs(),
            _console.status(f"[cyan]{message}[/cyan]", spinner="dots") as spin,
        ):

            def update(text: str) -> None:
                spin.update(f"[cyan]{text}[/cyan]")

            yield update
    else:
        _console.print(f"{message}...", highlight=False)
        log = _get_logger()

        def update(text: str) -> None:
            log.debug("live_status", message=text)

        yield update
