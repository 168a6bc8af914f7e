"""
Structured Logging with Structlog.

Every record, including stdlib loggers from uvicorn, alembic and SQLAlchemy,
is rendered through one processor chain so ledger events and library output
share a format.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from pointledger.config import settings

# Libraries that log per statement or per connection at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "uvicorn.access")


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _renderer() -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Configure structlog and route stdlib logging through it.

    A JSON line looks like:
    {
        "event": "points_spent",
        "level": "info",
        "timestamp": "2026-10-18T12:00:00.123456Z",
        "logger": "pointledger.services.points",
        "service": "points-ledger-api",
        "version": "0.1.0",
        "environment": "production",
        "user_id": 42,
        "free_used": 5,
        "paid_used": 3
    }
    """
    level = getattr(logging, settings.log_level.upper())
    shared = _shared_processors()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(),
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("points_acquired", user_id=user_id, amount=100)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind keys to every log line emitted inside the block.

    Nested blocks may rebind a key; the outer value is restored on exit.

    Usage:
        with log_context(user_id=42, job="reconcile"):
            logger.info("balance_reconciled")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._previous: dict[str, Any] = {}

    def __enter__(self) -> None:
        current = structlog.contextvars.get_contextvars()
        self._previous = {k: current[k] for k in self.context if k in current}
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        if self._previous:
            structlog.contextvars.bind_contextvars(**self._previous)
