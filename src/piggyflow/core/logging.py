"""
piggyflow.core.logging - Structured Logging Setup
==================================================

Every module logs through ``structlog.get_logger()`` and binds its own
``component=...`` context. This module wires structlog onto the stdlib
logging tree once, at the composition root, so that level filtering and
handlers behave the same as for any other library.

Usage:
    >>> from piggyflow.core.logging import configure_logging
    >>> configure_logging("DEBUG", json_logs=True)
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog over stdlib logging.

    Args:
        level: stdlib level name (DEBUG, INFO, ...). Unknown names fall back
            to INFO.
        json_logs: Render JSON lines instead of the console renderer.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)
    logging.getLogger().setLevel(log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
