"""
Logging setup for the conjoint command line.

Library modules only create loggers (``logging.getLogger(__name__)``); the
entry point calls :func:`setup_logging` once.  Console output goes through
rich so it matches the tables printed by the CLI.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"


def setup_logging(
    level: int = logging.INFO,
    log_file: str | Path | None = None,
    *,
    console: Console | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level for the console handler
        log_file: Optional file receiving detailed DEBUG-level records
        console: rich console to log to (stderr by default)
    """
    handlers: list[logging.Handler] = [
        RichHandler(
            console=console or Console(stderr=True),
            level=level,
            show_path=False,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handlers.append(file_handler)

    logging.basicConfig(
        level=min(level, logging.DEBUG) if log_file else level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )
