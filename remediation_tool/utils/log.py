"""
Logging setup.

Console output goes through rich; every run additionally gets a plain-text
``run.log`` in its evidence directory.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "remediation_tool"
FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: Union[str, int] = "INFO", verbose: bool = False,
                      console: Optional[Console] = None) -> logging.Logger:
    """
    Install the console handler on the package logger.

    Args:
        level: Configured log level name or number
        verbose: Force DEBUG regardless of ``level``
        console: Console to log to (stderr by default)

    Returns:
        logging.Logger: The package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    if verbose:
        level = logging.DEBUG
    elif isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handler = RichHandler(console=console or Console(stderr=True), show_path=False,
                          rich_tracebacks=True)
    handler.setLevel(level)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def attach_run_log(path: Path) -> logging.Handler:
    """Start copying every package log record to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.DEBUG:
        logger.setLevel(logging.DEBUG)
    return handler


def detach_run_log(handler: logging.Handler) -> None:
    logging.getLogger(LOGGER_NAME).removeHandler(handler)
    handler.close()
