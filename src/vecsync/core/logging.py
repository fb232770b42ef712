"""Structured logging for :mod:`vecsync`.

Events are emitted through structlog and rendered by stdlib handlers: a Rich
console handler on stderr (stdout is reserved for command output) and, when
a log directory is configured, a JSON file rotated at midnight whose
archives are gzip-compressed.
"""

from __future__ import annotations

import gzip
import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

Logger = structlog.stdlib.BoundLogger

LOG_FILENAME = "vecsync.log"
_ARCHIVES_KEPT = 7

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)
_PRE_CHAIN: tuple[Any, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    _TIMESTAMPER,
)


def resolve_level(level: str) -> int:
    """Map a level name such as ``"debug"`` onto its :mod:`logging` value.

    Raises:
        ValueError: If ``level`` names no standard level.
    """

    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unsupported log level: {level!r}")
    return resolved


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=list(_PRE_CHAIN),
    )


def _compress_archive(source: str, dest: str) -> None:
    with open(source, "rb") as raw, gzip.open(dest, "wb") as packed:
        shutil.copyfileobj(raw, packed)
    Path(source).unlink(missing_ok=True)


def _json_file_handler(directory: Path, level: int) -> TimedRotatingFileHandler:
    directory.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        directory / LOG_FILENAME,
        when="midnight",
        utc=True,
        backupCount=_ARCHIVES_KEPT,
        encoding="utf-8",
        delay=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.namer = lambda name: f"{name}.gz"
    handler.rotator = _compress_archive
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(structlog.processors.JSONRenderer(sort_keys=True))
    )
    return handler


def _console_handler(level: int, console: Console | None) -> RichHandler:
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        enable_link_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setLevel(level)
    handler.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=False)))
    return handler


def configure_logging(
    *,
    level: str = "INFO",
    log_dir: str | Path | None = None,
    console: Console | None = None,
) -> None:
    """Route structlog events through freshly installed root handlers.

    Calling it again replaces the handlers of the previous call, so the CLI
    can reconfigure once the final log level is known.

    Args:
        level: Level name applied to the root logger (case-insensitive).
        log_dir: Directory for ``vecsync.log``; ``None`` logs to console only.
        console: Rich console override, mainly for tests.

    Raises:
        ValueError: If ``level`` is not a recognized level name.
    """

    numeric = resolve_level(level)

    structlog.reset_defaults()
    structlog.configure(
        processors=[
            *_PRE_CHAIN,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [_console_handler(numeric, console)]
    if log_dir is not None:
        directory = Path(log_dir).expanduser().resolve(strict=False)
        handlers.append(_json_file_handler(directory, numeric))

    root = logging.getLogger()
    for previous in list(root.handlers):
        root.removeHandler(previous)
        previous.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(numeric)
    logging.captureWarnings(True)


def get_logger(name: str | None = None, **initial_context: Any) -> Logger:
    """Return a structured logger bound to ``initial_context``.

    Example:
        >>> logger = get_logger(__name__, component="vector-store")
        >>> isinstance(logger, structlog.stdlib.BoundLogger)
        True
    """

    return structlog.get_logger(name).bind(**initial_context)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every event logged by this thread inside the block.

    Lets store and reconciler events raised while handling one entity carry
    that entity's id without threading it through every call.
    """

    with structlog.contextvars.bound_contextvars(**fields):
        yield


__all__ = [
    "LOG_FILENAME",
    "Logger",
    "configure_logging",
    "get_logger",
    "log_context",
    "resolve_level",
]
