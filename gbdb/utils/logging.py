# gbdb/utils/logging.py
"""
Centralized logging configuration for gbdb.

Library modules only call ``get_logger(__name__)``; the CLI (or a script
driving the database layer) calls ``setup_logger`` once at startup.
"""

import logging
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler

def setup_logger(logfile: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """
    Configures the 'gbdb' namespace logger and returns it.

    - Console output goes through a RichHandler.
    - A FileHandler is added when a logfile path is given, e.g. to keep a
      record of every upload run next to the database.
    - Log level is DEBUG if verbose is True (this also logs the SQL text and
      bound parameters of every query), otherwise INFO.

    Args:
        logfile: Optional path to a file for log output.
        verbose: If True, sets the log level to DEBUG.

    Returns:
        The configured 'gbdb' logger instance.
    """
    level = logging.DEBUG if verbose else logging.INFO

    # Everything under gbdb.* hangs off this logger
    log = logging.getLogger("gbdb")
    log.setLevel(level)

    # Keep upload progress out of the host application's root handlers
    log.propagate = False

    # Repeated CLI invocations in one process (tests) would otherwise stack handlers
    if log.hasHandlers():
        log.handlers.clear()

    # --- Console Handler ---
    console_handler = RichHandler(
        rich_tracebacks=True,
        show_path=False,
        log_time_format="[%X]"
    )
    console_handler.setLevel(level)
    log.addHandler(console_handler)

    # --- File Handler ---
    if logfile:
        # Typer hands over a Path, YAML config a plain string
        logfile = Path(logfile)

        # The log may live in a directory that does not exist yet
        logfile.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(logfile)
        file_handler.setLevel(level)

        # Plain format for files; no rich markup
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)
        log.debug("File logging enabled at: %s", logfile)

    log.debug("Logger configured with level=%s", logging.getLevelName(level))
    return log


def get_logger(name: str) -> logging.Logger:
    """
    Returns a logger under the 'gbdb' namespace, so records from
    gbdb.db.upload, gbdb.db.query etc. pick up the handlers installed by
    setup_logger.

    Args:
        name: The name for the logger, typically __name__.
    """
    return logging.getLogger(name)
