"""Logging configuration for brainsync.

Events are structlog key/value pairs: JSON in production, a coloured console
in development. Sync runs bind ``user_id`` and ``provider`` with
:func:`log_context`, so pipeline and storage events emitted during a run
carry them too.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from brainsync.config import get_settings

# Client libraries that log every request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg", "aiohttp.access")


def _renderer(development: bool) -> Any:
    if development:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.JSONRenderer()


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger from settings."""
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _renderer(settings.is_development),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance."""
    return structlog.get_logger(name)
