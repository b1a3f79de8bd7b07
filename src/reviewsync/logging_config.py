"""structlog configuration.

Modules only call ``structlog.get_logger()``; this is the one place that
decides how those entries are rendered.
"""

import logging
import sys

import structlog

from reviewsync.config import settings


def configure_logging(level: int | None = None) -> None:
    """Configure structlog processors for the current environment."""
    if level is None:
        level = logging.DEBUG if settings.debug else logging.INFO

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
