"""Logging setup: stdlib loggers rendered through rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()


def setup_logging(debug: bool = False) -> None:
    """Route every module logger through a single RichHandler."""
    handler = RichHandler(
        console=console,
        show_path=debug,
        show_time=debug,
        rich_tracebacks=True,
        markup=False,
    )
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # urllib3 is chatty at DEBUG about every pooled connection
    logging.getLogger("urllib3").setLevel(logging.INFO if debug else logging.WARNING)
