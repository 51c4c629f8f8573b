"""Shared utilities for brainsync."""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Time an async block and optionally log its duration.

    The yielded dict gains ``elapsed_ms`` once the block exits, whether it
    returned or raised. With ``log`` set, an info event named ``name`` is
    emitted with ``duration_ms`` plus any ``extra`` fields::

        async with timed_operation("integration_sync", log=log, provider=p) as timing:
            await service.sync_integration(user_id, p)
        log.debug("sync_timing", elapsed_ms=timing["elapsed_ms"])
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
