"""
logs.py - Structured logging

All harness logging goes through structlog. Modules obtain a logger with
get_logger(__name__) and bind run/node context as key/value pairs.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from .config import LoggingConfig


_configured = False


def configure_logging(config: LoggingConfig, stream: Any = None) -> None:
    """
    Configure structured logging for the harness process.

    Safe to call more than once; the last call wins.
    """
    global _configured

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    harness_logger = logging.getLogger("ledger_harness")
    harness_logger.handlers.clear()
    harness_logger.addHandler(handler)
    harness_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    harness_logger.propagate = False

    _configured = True


def get_logger(name: str) -> Any:
    """Return a structlog logger for a harness module."""
    return structlog.get_logger(name)


def is_configured() -> bool:
    return _configured
