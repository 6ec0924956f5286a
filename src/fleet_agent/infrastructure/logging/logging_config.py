"""
Structured logging configuration for the fleet agent.

Configures structlog for human-readable text output (default) or JSON lines.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import EventDict


LEVEL_COLORS = {
    "debug": "\033[36m",
    "info": "\033[32m",
    "warning": "\033[33m",
    "error": "\033[31m",
    "critical": "\033[35m",
}
RESET = "\033[0m"


def text_renderer(logger: Any, method_name: str, event_dict: EventDict) -> str:
    """
    Render an event as a single human-readable line.

    Format: [timestamp] [LEVEL] [logger] message key=value ...
    Example: [2025-01-14 10:30:45] [INFO] [fleet_agent.job_lifecycle] Job finished job_id=abc status=completed
    """
    timestamp = event_dict.pop("timestamp", "")
    level = str(event_dict.pop("level", method_name)).lower()
    logger_name = event_dict.pop("logger", None)
    message = event_dict.pop("event", "")
    exception = event_dict.pop("exception", None)
    event_dict.pop("stack", None)

    color = LEVEL_COLORS.get(level, "")
    parts = []
    if timestamp:
        parts.append(f"[{timestamp}]")
    parts.append(f"[{color}{level.upper()}{RESET if color else ''}]")
    if logger_name and logger_name != "root":
        parts.append(f"[{logger_name}]")
    parts.append(str(message))

    for key, value in sorted(event_dict.items()):
        if isinstance(value, (str, int, float, bool)):
            parts.append(f"{key}={value}")
        else:
            parts.append(f"{key}={value!r}")

    line = " ".join(parts)
    if exception:
        line += "\n" + exception
    return line


def configure_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """
    Configure structlog and the standard logging bridge.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "text" for human-readable lines, "json" for JSON lines
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(text_renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None, **context: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance with optional bound context.

    Args:
        name: Logger name (usually __name__)
        **context: Key/value pairs bound to every event, e.g. job_id

    Returns:
        Configured logger instance
    """
    if name:
        return structlog.get_logger(name, **context)
    return structlog.get_logger(**context)


def bind_context(**context: Any) -> None:
    """
    Bind context to every log event of the current task.

    Example:
        bind_context(request_id="123", task_id="task-1")
    """
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
