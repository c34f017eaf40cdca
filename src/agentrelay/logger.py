"""Structured logging singleton.

Reads LOG_LEVEL from os.environ directly: the logger is imported by
config.py, so it has to come up before pydantic Settings exists.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Levels that make the launcher keep full stdout/stderr in its audit logs
VERBOSE_LEVELS = frozenset({"DEBUG", "TRACE"})


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    if level_name == "TRACE":
        level_name = "DEBUG"
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("agentrelay")


logger = _setup_logging()


def is_verbose() -> bool:
    """True when LOG_LEVEL asks for debug output (debug or trace)."""
    return os.environ.get("LOG_LEVEL", "").upper() in VERBOSE_LEVELS


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
