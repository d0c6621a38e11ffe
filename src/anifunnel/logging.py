"""structlog setup for the anifunnel server.

Two rotating files live in the log directory:

``anifunnel.log``
    every event, rendered for people to read
``scrobble.log``
    one JSON object per line, only from ``anifunnel.sync`` loggers, so each
    matching decision can be replayed or grepped later

Foreground runs can also mirror the human-readable stream to stderr.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

MAIN_LOG = "anifunnel.log"
SCROBBLE_LOG = "scrobble.log"

_ROTATE_AT = 10 * 1024 * 1024
_KEEP = 5
_QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx", "httpcore", "aiosqlite")

_pre_chain: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_pre_chain)


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_ROTATE_AT, backupCount=_KEEP, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _log_uncaught(exc_type: type[BaseException], exc_value: BaseException, exc_tb: object) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logging.getLogger("anifunnel").critical("uncaught_exception", exc_info=(exc_type, exc_value, exc_tb))


def setup_logging(log_level: str = "info", log_dir: Path | None = None, *, console: bool = False) -> None:
    """Route structlog through stdlib logging and attach the handlers.

    Without *log_dir* no files are written, which keeps tests hermetic.
    *console* adds a stderr handler for ``anifunnel serve``.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[*_pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    readable = _formatter(structlog.dev.ConsoleRenderer(colors=False))

    handlers: list[logging.Handler] = []
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating(log_dir / MAIN_LOG, readable))

        scrobble = _rotating(log_dir / SCROBBLE_LOG, _formatter(structlog.processors.JSONRenderer()))
        scrobble.addFilter(logging.Filter("anifunnel.sync"))
        handlers.append(scrobble)
    if console:
        stderr = logging.StreamHandler(sys.stderr)
        stderr.setFormatter(readable)
        handlers.append(stderr)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    sys.excepthook = _log_uncaught  # type: ignore[assignment]
