"""
Logging configuration for gana.

Library modules call ``get_logger(__name__-ish)`` and never configure
handlers themselves; entry points (CLI, daemon) call one of the setup
functions below.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from rich.logging import RichHandler

from .settings import get_state_dir

ROOT_LOGGER = "gana"
DEFAULT_LOG_DIR = get_state_dir() / "logs"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a logger namespaced under 'gana'."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    console: bool = True,
    rich_console: bool = True,
) -> logging.Logger:
    """Configure the 'gana' logger.

    Args:
        level: Log level for the package logger
        log_file: Also write to this file (parent directories are created)
        console: Attach a console handler
        rich_console: Prefer rich's handler for console output

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    if console:
        handler: logging.Handler
        if rich_console:
            handler = RichHandler(show_path=False, rich_tracebacks=True)
        else:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(level)
        logger.addHandler(handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    return logger


def setup_daemon_logging(log_file: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    """Daemon logging: file only, since the daemon is detached."""
    if log_file is None:
        log_file = DEFAULT_LOG_DIR / "daemon.log"
    return setup_logging(level=level, log_file=log_file, console=False)


def setup_cli_logging(level: int = logging.WARNING) -> logging.Logger:
    """CLI logging: warnings and errors to the console."""
    return setup_logging(level=level, console=True)


class StructuredLogger:
    """Wrapper adding ``key=value`` context to log messages.

    >>> log = get_structured_logger("registry").with_context(instance_id="ab12")
    >>> log.info("saved", instances=3)
    """

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        self._logger = logger
        self._context = dict(context or {})

    def with_context(self, **kwargs: Any) -> "StructuredLogger":
        merged = dict(self._context)
        merged.update(kwargs)
        return StructuredLogger(self._logger, merged)

    def _format(self, message: str, kwargs: Dict[str, Any]) -> str:
        fields = dict(self._context)
        fields.update(kwargs)
        if not fields:
            return message
        rendered = " ".join(f"{k}={v}" for k, v in fields.items())
        return f"{message} [{rendered}]"

    def debug(self, message: str, **kwargs: Any) -> None:
        self._logger.debug(self._format(message, kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self._logger.info(self._format(message, kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self._logger.warning(self._format(message, kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self._logger.error(self._format(message, kwargs))

    def exception(self, message: str, **kwargs: Any) -> None:
        self._logger.exception(self._format(message, kwargs))


def get_structured_logger(name: str) -> StructuredLogger:
    return StructuredLogger(get_logger(name))
