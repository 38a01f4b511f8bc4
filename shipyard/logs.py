"""
Logging setup: one host-wide activity log plus one log file per project.

Project files are attached with a filter keyed on a context variable, so two
pipelines running in different threads of the webhook server each write only
their own project's lines.
"""

import contextvars
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

ROOT_LOGGER = "shipyard"
LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"

current_project: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("current_project", default=None)


class ProjectFilter(logging.Filter):
    """Pass only records emitted while `project` is the active project."""

    def __init__(self, project: str):
        super().__init__()
        self.project = project

    def filter(self, record: logging.LogRecord) -> bool:
        return current_project.get() == self.project


def configure_logging(logs_dir: Path, verbose: bool = False) -> logging.Logger:
    """
    Attach the general file handler and a stderr handler to the package logger.

    Safe to call more than once; handlers are only added the first time.

    Args:
        logs_dir: Directory that holds general.log and per-project logs
        verbose: Show INFO on stderr instead of WARNING and above

    Returns:
        The package logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)

    if getattr(logger, "_shipyard_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "general.log")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Cannot write general log in {logs_dir}: {e}")

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console)

    logger._shipyard_configured = True
    return logger


@contextmanager
def project_logging(logs_dir: Path, project: str) -> Iterator[None]:
    """Route package log records to <logs_dir>/<project>.log for the duration."""
    logger = logging.getLogger(ROOT_LOGGER)
    token = current_project.set(project)
    handler = None
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(logs_dir / f"{project}.log")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(ProjectFilter(project))
        logger.addHandler(handler)
    except OSError as e:
        logger.warning(f"Cannot open project log for {project}: {e}")

    try:
        yield
    finally:
        if handler is not None:
            logger.removeHandler(handler)
            handler.close()
        current_project.reset(token)
