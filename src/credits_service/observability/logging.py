"""structlog configuration for the credits service."""

import logging
import sys
from typing import Any, cast

import structlog

from credits_service.config import settings
from credits_service.middleware.logging_filter import redact_sensitive_data


def configure_logging(service_name: str = "credits-service") -> structlog.stdlib.BoundLogger:
    """Configure stdlib logging and structlog to work together.

    Development gets colored console output; every other environment gets
    JSON for log aggregation unless LOG_JSON says otherwise. Call once at
    startup, after ``init_sentry()``.
    """
    log_level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    json_format = settings.LOG_JSON
    if json_format is None:
        json_format = settings.ENVIRONMENT != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    # Remove existing handlers to avoid duplicates on hot reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        # Redact before anything renders or leaves the process
        redact_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))
