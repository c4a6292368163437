"""Structured logging with structlog."""

from __future__ import annotations

import logging
import sys
from functools import lru_cache

import structlog

LOG_FORMATS = ("console", "json")


def configure_logging(level: str = "info", fmt: str = "console") -> None:
    """Configure structlog on top of stdlib logging, rendering to stderr.

    Example:
        ```python
        configure_logging(level="debug", fmt="json")
        ```
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"log format must be one of {', '.join(LOG_FORMATS)}")

    handler = logging.StreamHandler(sys.stderr)
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer))


@lru_cache(maxsize=100)
def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Example:
        ```python
        log = get_logger(__name__)
        ```
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: object) -> None:
    """Bind context variables for structured logging.

    Example:
        ```python
        bind_context(run_mode="test")
        ```
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear context variables.

    Example:
        ```python
        clear_context()
        ```
    """
    structlog.contextvars.clear_contextvars()
