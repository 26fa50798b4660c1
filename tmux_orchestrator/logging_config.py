"""Logging setup for tmux-orchestrator.

Every module logs through the ``tmux_orchestrator`` package logger, which
writes to a rotating file and optionally to the console. Records about one
pane carry its address in a ``pane`` attribute: handlers render it as
``[dev:main.0]`` and can be restricted to a set of panes when chasing a
problem in a single session.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, MutableMapping, TextIO

from .models import LogSettings

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(pane_tag)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
DEFAULT_BACKUP_COUNT = 3

PACKAGE_LOGGER = "tmux_orchestrator"
LOG_FILE_NAME = "tmux-orchestrator.log"
LOG_DIR = Path.home() / ".config" / "tmux-orchestrator" / "logs"


class PaneTagFilter(logging.Filter):
    """Give every record a ``pane_tag`` for the format string."""

    def filter(self, record: logging.LogRecord) -> bool:
        pane = getattr(record, "pane", None)
        record.pane_tag = f" [{pane}]" if pane else ""
        return True


class PaneFilter(logging.Filter):
    """Pass only records tagged with one of the given panes."""

    def __init__(self, panes: Iterable[str]) -> None:
        super().__init__()
        self.panes = frozenset(panes)

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "pane", None) in self.panes


class PaneLoggerAdapter(logging.LoggerAdapter):
    """Tags each record with the pane address it concerns."""

    def __init__(self, logger: logging.Logger, pane: str) -> None:
        super().__init__(logger, {"pane": pane})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the package namespace.

    ``get_logger("coordinator")`` and ``get_logger("tmux_orchestrator.coordinator")``
    return the same logger.
    """
    if name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


def pane_logger(name: str, pane: str) -> PaneLoggerAdapter:
    """Get a logger whose records are tagged with ``pane``."""
    return PaneLoggerAdapter(get_logger(name), pane)


def get_log_file_path(log_dir: str | Path | None = None) -> Path:
    """Return the log file path, creating its directory if needed."""
    directory = Path(log_dir) if log_dir else LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    return directory / LOG_FILE_NAME


def setup_logging(
    *,
    level: int | str = DEFAULT_LOG_LEVEL,
    log_to_file: bool = True,
    log_to_console: bool = False,
    console_stream: TextIO = sys.stderr,
    log_dir: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    debug_modules: list[str] | None = None,
    panes: Iterable[str] | None = None,
) -> None:
    """Configure the package logger.

    Args:
        level: Log level, as a number or a name such as "DEBUG".
        log_to_file: Whether to write the rotating log file.
        log_to_console: Whether to also log to ``console_stream``.
        console_stream: Stream for console output.
        log_dir: Directory of the log file (default: LOG_DIR).
        max_bytes: Log file size that triggers rotation (0 never rotates).
        backup_count: Number of rotated files to keep.
        debug_modules: Modules (e.g. "coordinator") to log at DEBUG.
        panes: If given, only records about these panes are written.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), DEFAULT_LOG_LEVEL)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    for handler in package_logger.handlers:
        handler.close()
    package_logger.handlers.clear()

    handlers: list[logging.Handler] = []
    if log_to_file:
        handlers.append(
            RotatingFileHandler(
                get_log_file_path(log_dir),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    if log_to_console:
        handlers.append(logging.StreamHandler(console_stream))

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT, DEFAULT_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(PaneTagFilter())
        if panes is not None:
            handler.addFilter(PaneFilter(panes))
        package_logger.addHandler(handler)

    for module_name in debug_modules or []:
        get_logger(module_name).setLevel(logging.DEBUG)


def setup_logging_from_settings(settings: LogSettings, *, console_stream: TextIO = sys.stderr) -> None:
    """Configure the package logger from the ``log`` config section."""
    setup_logging(
        level=settings.level,
        log_to_file=settings.log_to_file,
        log_to_console=settings.log_to_console,
        console_stream=console_stream,
        log_dir=settings.log_dir,
        max_bytes=settings.max_bytes,
        backup_count=settings.backup_count,
        debug_modules=settings.debug_modules,
    )


def log_exception(
    logger: logging.Logger | logging.LoggerAdapter,
    exc: BaseException,
    message: str = "An error occurred",
    *,
    level: int = logging.ERROR,
    include_traceback: bool = True,
) -> None:
    """Log an exception with consistent formatting."""
    if include_traceback:
        logger.log(level, "%s: %s", message, exc, exc_info=exc)
    else:
        logger.log(level, "%s: %s (%s)", message, exc, type(exc).__name__)


def get_recent_logs(lines: int = 100, log_dir: str | Path | None = None) -> list[str]:
    """Return the last ``lines`` lines of the log file."""
    log_file = get_log_file_path(log_dir)
    if not log_file.exists():
        return []

    with open(log_file, encoding="utf-8") as f:
        return f.readlines()[-lines:]
