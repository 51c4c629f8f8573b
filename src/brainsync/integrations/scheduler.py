"""Batch driver for due integration syncs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from brainsync.config import Settings, get_settings
from brainsync.integrations.models import SyncState
from brainsync.integrations.storage import IntegrationStorage
from brainsync.integrations.sync import IntegrationSyncService, SyncResult
from brainsync.logging import get_logger
from brainsync.utils import timed_operation

log = get_logger("brainsync.integrations.scheduler")


@dataclass
class BatchSyncReport:
    """Totals over one scheduler run."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_items_synced: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_items_synced": self.total_items_synced,
            "errors": list(self.errors),
        }


class SyncScheduler:
    """Runs every due sync with bounded concurrency.

    Different (user, provider) pairs run in parallel; the sync-state guard
    keeps each pair to a single run.
    """

    def __init__(
        self,
        storage: IntegrationStorage,
        service: IntegrationSyncService,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._storage = storage
        self._service = service
        self._settings = settings or get_settings()

    async def run_due_syncs(self, limit: int | None = None) -> BatchSyncReport:
        """Sync up to ``limit`` due pairs (``sync_batch_size`` by default)."""
        batch_size = limit or self._settings.sync_batch_size
        report = BatchSyncReport()

        async with timed_operation("due_syncs_run", log=log) as timing:
            states = await self._storage.list_due_sync_states(
                batch_size,
                stale_after_minutes=self._settings.sync_stale_after_minutes,
                max_error_count=self._settings.sync_max_error_count,
            )
            semaphore = asyncio.Semaphore(self._settings.sync_concurrency)

            async def run_one(state: SyncState) -> SyncResult | BaseException:
                async with semaphore:
                    try:
                        return await self._service.sync_integration(state.user_id, state.provider)
                    except Exception as e:
                        return e

            outcomes = await asyncio.gather(*(run_one(state) for state in states))

            for state, outcome in zip(states, outcomes, strict=True):
                report.processed += 1
                if isinstance(outcome, BaseException):
                    report.failed += 1
                    report.errors.append(
                        {
                            "user_id": state.user_id,
                            "provider": state.provider,
                            "error": str(outcome),
                        }
                    )
                    log.warning(
                        "scheduled_sync_error",
                        user_id=state.user_id,
                        provider=state.provider,
                        error=str(outcome),
                    )
                elif outcome.skipped:
                    report.skipped += 1
                elif outcome.success:
                    report.successful += 1
                    report.total_items_synced += outcome.items_processed
                else:
                    report.failed += 1
                    report.errors.append(
                        {
                            "user_id": state.user_id,
                            "provider": state.provider,
                            "error": "; ".join(e.message for e in outcome.errors),
                        }
                    )

        log.info("due_syncs_report", elapsed_ms=timing["elapsed_ms"], **report.to_dict())
        return report
