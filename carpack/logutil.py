from __future__ import annotations

import logging
import sys
from typing import Any, Optional, TextIO

import structlog


def configure_logging(level: str = "INFO", *, stream: Optional[TextIO] = None) -> None:
    """Route structlog output to stderr with level filtering for CLI runs."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(stream or sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(logger: Any = None, name: Optional[str] = None) -> Any:
    """Return the injected logger, or a module logger when none was given."""
    if logger is not None:
        return logger
    return structlog.get_logger(name)
