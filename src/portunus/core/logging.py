"""
Structured logging for migration runs, built on structlog.

Log events go to stderr. Stdout carries command output only (status tables,
lists of applied migrations), so it can be piped or parsed.
"""
import logging
import sys
from typing import Optional, TextIO

import structlog

# Driver loggers that narrate every statement at DEBUG
DRIVER_LOGGERS = ("aiosqlite", "asyncpg")


def _renderer(json_output: bool, stream: TextIO) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=stream.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog through stdlib logging on stderr (and optionally a file).

    Safe to call more than once; the last call wins.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Emit one JSON object per event instead of console lines
        log_file: Also append events to this file
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setLevel(log_level)

    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    # Statement text is already in our own events; keep driver chatter out
    for name in DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(json_output, sys.stderr))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("portunus")
