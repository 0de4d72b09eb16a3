"""
Logging configuration using structlog for structured logging.

Logs go to stderr so that command output on stdout stays machine-readable.
JSON is the default rendering; ``console`` gives a human-friendly line format
for interactive use.
"""

import logging
import sys
from typing import Any, Literal

import structlog


def configure_logging(log_level: str = "WARNING", log_format: Literal["json", "console"] = "json") -> None:
    """Configure structlog once per command invocation.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` for one JSON object per line, ``console`` for
            colourless key=value lines
    """
    renderer: Any
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def bind_command_context(**values: Any) -> None:
    """Attach ``project``/``command`` style context to every later log line."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("issue_assigned", issue=42, worker="w1")
    """
    return structlog.get_logger(name)
