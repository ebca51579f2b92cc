"""
structlog setup shared by the CLI, the worker and the API.

JSON lines in production (one event per pipeline stage, easy to grep for
``job_abandoned`` or ``row_error``) and colored console output in debug mode.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.processors import (
    CallsiteParameter,
    CallsiteParameterAdder,
    EventRenamer,
)
from structlog.typing import BindableLogger, EventDict, Processor

from lienflow.core.config import Settings, get_settings

QUIET_LOGGERS = ("httpx", "httpcore", "playwright", "asyncio", "aiosqlite")

_CALLSITE = CallsiteParameterAdder(
    [CallsiteParameter.FILENAME, CallsiteParameter.LINENO, CallsiteParameter.FUNC_NAME]
)


def _stamp_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    settings = get_settings()
    event_dict.setdefault("app", settings.app_name)
    event_dict.setdefault("environment", "development" if settings.debug else "production")
    return event_dict


def _route_stdlib(level: int) -> None:
    """Route stdlib logging (SQLAlchemy, httpx, tenacity) through stdout."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _renderers(debug: bool) -> list[Processor]:
    if debug:
        return [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
                sort_keys=True,
            )
        ]
    # log shippers expect the message under "msg"
    return [
        EventRenamer(to="msg"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def build_processors(settings: Settings) -> list[Processor]:
    """Return the full processor chain for the given settings."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _CALLSITE,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_service,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        *_renderers(settings.debug),
    ]


def configure_logging() -> None:
    """
    Install the structlog processor chain and route stdlib logging.

    Call this once at process startup (CLI command, API lifespan, worker).
    """
    settings = get_settings()
    level = logging.getLevelName(settings.log_level)

    _route_stdlib(level)
    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_context: Any) -> BindableLogger:
    """
    Get a structured logger, optionally pre-bound with context.

    Example:
        >>> logger = get_logger("services.worker", worker="w1")
        >>> logger.info("worker_claimed", job_id=42, file_number="U260005937931")
    """
    logger = structlog.get_logger(name)
    return logger.bind(**initial_context) if initial_context else logger


@contextmanager
def bound_context(**context: Any) -> Iterator[None]:
    """
    Bind context variables for the duration of the block.

    The worker wraps each job in ``bound_context(job_id=..., file_number=...)``
    so every event emitted by the session carries the job identity.
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
