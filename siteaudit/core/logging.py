"""
Structured logging using structlog.
Outputs JSON in production, colored console in development.
Every event carries the package version so stored logs can be matched to a build.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from siteaudit.core.config import Settings, get_settings


def version_stamper(version: str) -> Processor:
    def stamp(logger: Any, method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("version", version)
        event_dict["severity"] = method.upper() if method != "exception" else "ERROR"
        return event_dict
    return stamp


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        version_stamper(settings.APP_VERSION),
    ]

    if settings.LOG_FORMAT == "json":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stderr keeps stdout free for JSON reports piped by callers
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )

    # Request-level chatter from the HTTP client and the ORM
    if settings.ENV == "production" or not settings.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
