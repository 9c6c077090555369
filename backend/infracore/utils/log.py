"""Structured logging helpers built on *structlog*.

The rest of the codebase can *always* ``from infracore.utils.log import log``
and use ``log.info("event_name", key=value)``.  :func:`configure_logging` is
called once by the bootstrap sequence; until then structlog's defaults apply,
which is what tests rely on when they capture events.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

# Keep the logger global so every import shares the same base instance.
log = structlog.get_logger("infracore")


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Install the processor chain for the process.

    JSON lines in managed deployments, a readable console renderer locally.
    """

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer: Any
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(**bindings: Any):  # noqa: D401 – factory helper
    """Return a child/bound logger with optional key/value bindings."""

    return log.bind(**bindings)


__all__ = ["configure_logging", "get_logger", "log"]
