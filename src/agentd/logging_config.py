"""
Logging setup for agentd.

All modules log through the ``agentd`` logger hierarchy. The daemon logs
to a timestamped file under ``<home>/logs``; foreground runs additionally
get a rich console handler.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "agentd"

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the agentd namespace."""
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    console: bool = True,
) -> logging.Logger:
    """Configure the agentd logger.

    Replaces any handlers installed by a previous call.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.handlers.clear()
    logger.setLevel(level)
    logger.propagate = False

    if console:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setLevel(level)
        logger.addHandler(handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger


def daemon_log_path(logs_dir: Path, now: Optional[datetime] = None) -> Path:
    """One log file per daemon run, named by start time."""
    now = now or datetime.now()
    return logs_dir / f"{now.strftime('%Y-%m-%d-%H-%M-%S')}-daemon.log"


def setup_daemon_logging(logs_dir: Path, foreground: bool = False) -> Path:
    """Configure logging for a daemon run. Returns the log file path."""
    log_file = daemon_log_path(logs_dir)
    setup_logging(level=logging.DEBUG, log_file=log_file, console=foreground)
    return log_file


def log_section(logger: logging.Logger, title: str) -> None:
    """Write a visual section header, like the daemon start banner."""
    bar = "=" * 60
    logger.info(bar)
    logger.info(title)
    logger.info(bar)
