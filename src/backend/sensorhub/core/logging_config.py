"""structlog configuration."""

import logging
import sys

import structlog

from sensorhub.core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog once at process start.

    JSON lines outside development, colored console output otherwise.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    use_json = settings.log_json if settings.log_json is not None else settings.environment != "development"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
