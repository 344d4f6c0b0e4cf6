"""ImmorTerm logging configuration.

ImmorTerm logs through structlog. Output goes to stderr: a colored console
renderer when stderr is a terminal, JSON lines otherwise (daemon/cron use).
Level resolution order: explicit argument, `IMMORTERM_LOG_LEVEL`, `INFO`.
"""

from __future__ import annotations

import os
import sys
from typing import Any, Optional, cast

import structlog

LOG_LEVEL_ENV = "IMMORTERM_LOG_LEVEL"

_LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}


def resolve_level(level: Optional[str] = None) -> int:
    """Map a level name to its numeric value, falling back to INFO."""
    name = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
    return _LEVELS.get(name, 20)


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure ImmorTerm logging.

    Args:
        level: Optional override for `IMMORTERM_LOG_LEVEL`.
        json_output: Force JSON (True) or console (False) rendering. Defaults to
            console when stderr is a TTY.
    """
    if json_output is None:
        json_output = not sys.stderr.isatty()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound to the given module name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
