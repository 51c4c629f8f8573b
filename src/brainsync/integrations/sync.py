"""Sync orchestrator for connected integrations.

Pulls items from a provider for one user, stores them idempotently and
fans new or changed items out through the ingestion pipeline. A sync for
one (user, provider) pair is serialized by the sync-state guard; the
state always leaves ``syncing`` when a run ends, however it ends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from brainsync.config import Settings, get_settings
from brainsync.constants import PROVIDER_FETCH_LIMIT
from brainsync.ingestion.pipeline import IngestionPipeline
from brainsync.integrations.base import FetchResult, ProviderClient, collect_items
from brainsync.integrations.errors import (
    IntegrationNotConnectedError,
    ItemPersistenceError,
    SyncInProgressError,
    TokenRefreshError,
)
from brainsync.integrations.models import Integration, IntegrationTokens, StandardIngestItem
from brainsync.integrations.registry import ProviderRegistry
from brainsync.integrations.storage import IntegrationStorage
from brainsync.logging import get_logger, log_context
from brainsync.utils import timed_operation, utcnow

log = get_logger("brainsync.integrations.sync")

INTERRUPTED_MESSAGE = "Sync interrupted before completion"


class OutcomeKind(StrEnum):
    """What happened to one fetched item."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass
class SyncError:
    """One error recorded during a run; ``source_id`` is None for run-level errors."""

    message: str
    source_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"message": self.message, "source_id": self.source_id}


@dataclass(frozen=True)
class ItemOutcome:
    """Per-item result collected into the batch."""

    source_id: str
    kind: OutcomeKind
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind != OutcomeKind.FAILED


@dataclass
class SyncResult:
    """Summary of one sync run."""

    provider: str
    success: bool = False
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    errors: list[SyncError] = field(default_factory=list)
    skipped: bool = False
    has_more: bool = False

    def record(self, outcome: ItemOutcome) -> None:
        """Fold one item outcome into the counters."""
        self.items_processed += 1
        match outcome.kind:
            case OutcomeKind.CREATED:
                self.items_created += 1
            case OutcomeKind.UPDATED:
                self.items_updated += 1
            case OutcomeKind.UNCHANGED:
                self.items_skipped += 1
            case OutcomeKind.FAILED:
                self.items_failed += 1
                self.errors.append(SyncError(outcome.error or "Unknown error", outcome.source_id))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "provider": self.provider,
            "success": self.success,
            "items_processed": self.items_processed,
            "items_created": self.items_created,
            "items_updated": self.items_updated,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "errors": [e.to_dict() for e in self.errors],
            "skipped": self.skipped,
            "has_more": self.has_more,
        }


def compute_backoff(
    error_count: int,
    *,
    base_minutes: int = 15,
    max_minutes: int = 1440,
    max_error_count: int = 5,
) -> timedelta | None:
    """Delay before the next automatic attempt after ``error_count`` failures.

    ``base * 2**(n-1)`` minutes capped at ``max_minutes``. Returns None once
    ``error_count`` reaches ``max_error_count``: automatic syncs pause until
    a manual sync succeeds.
    """
    if error_count <= 0:
        return timedelta(0)
    if error_count >= max_error_count:
        return None
    return timedelta(minutes=min(max_minutes, base_minutes * 2 ** (error_count - 1)))


class IntegrationSyncService:
    """Runs provider syncs for users."""

    def __init__(
        self,
        storage: IntegrationStorage,
        registry: ProviderRegistry,
        pipeline: IngestionPipeline,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._storage = storage
        self._registry = registry
        self._pipeline = pipeline
        self._settings = settings or get_settings()

    def compute_backoff(self, error_count: int) -> timedelta | None:
        """Backoff for ``error_count`` failures using configured limits."""
        return compute_backoff(
            error_count,
            base_minutes=self._settings.sync_backoff_base_minutes,
            max_minutes=self._settings.sync_backoff_max_minutes,
            max_error_count=self._settings.sync_max_error_count,
        )

    async def sync_integration(
        self,
        user_id: str,
        provider: str,
        *,
        full_sync: bool = False,
        dry_run: bool = False,
        limit: int = PROVIDER_FETCH_LIMIT,
    ) -> SyncResult:
        """Sync one provider for one user.

        Args:
            user_id: Owner of the integration.
            provider: Registered provider name.
            full_sync: Ignore the watermark and cursor and fetch everything.
            dry_run: Store items but skip the ingestion pipeline.
            limit: Maximum items fetched in this run.

        Returns:
            The run summary. ``skipped`` is set when another run holds the
            sync guard.

        Raises:
            ProviderNotRegisteredError: If no client is registered.
            IntegrationNotConnectedError: If the user has no credentials.
        """
        client = self._registry.get(provider)
        integration = await self._storage.get_integration(user_id, provider)
        if integration is None:
            raise IntegrationNotConnectedError(user_id, provider)

        result = SyncResult(provider=provider)
        state = await self._storage.try_begin_sync(
            user_id, provider, stale_after_minutes=self._settings.sync_stale_after_minutes
        )
        if state is None:
            result.skipped = True
            result.errors.append(SyncError(str(SyncInProgressError(user_id, provider))))
            log.info("sync_skipped_in_progress", user_id=user_id, provider=provider)
            return result

        started_at = utcnow()
        since = None if full_sync else state.last_successful_sync_at
        cursor = None if full_sync else state.cursor
        next_cursor: str | None = None
        failure: str | None = None

        async def heartbeat(_page: FetchResult | None = None) -> None:
            await self._storage.heartbeat_sync(user_id, provider)

        try:
            with log_context(user_id=user_id, provider=provider):
                async with timed_operation("integration_sync", log=log):
                    tokens = await self._ensure_fresh_tokens(client, integration)
                    page = await collect_items(
                        client,
                        tokens,
                        since=since,
                        cursor=cursor,
                        limit=limit,
                        on_page=heartbeat,
                    )
                    next_cursor = page.next_cursor
                    result.has_more = next_cursor is not None

                    for item in page.items:
                        result.record(
                            await self._process_item(user_id, item, dry_run=dry_run)
                        )
                        await heartbeat()

            result.success = True
        except Exception as e:
            failure = str(e) or type(e).__name__
            result.errors.append(SyncError(failure))
            backoff = self.compute_backoff(state.error_count + 1)
            log.error(
                "sync_failed",
                user_id=user_id,
                provider=provider,
                error=failure,
                retry_in_minutes=backoff.total_seconds() / 60 if backoff is not None else None,
                paused=backoff is None,
            )
        finally:
            if result.success:
                await self._storage.complete_sync(
                    user_id,
                    provider,
                    items_processed=result.items_processed,
                    # While pages remain, keep the old watermark and resume from the cursor.
                    synced_at=since if result.has_more else started_at,
                    next_sync_at=self._next_sync_at(integration, result.has_more),
                    cursor=next_cursor,
                )
            else:
                await self._storage.fail_sync(
                    user_id,
                    provider,
                    error=failure or INTERRUPTED_MESSAGE,
                    backoff_base_minutes=self._settings.sync_backoff_base_minutes,
                    backoff_max_minutes=self._settings.sync_backoff_max_minutes,
                )

        log.info(
            "sync_complete",
            user_id=user_id,
            provider=provider,
            processed=result.items_processed,
            created=result.items_created,
            updated=result.items_updated,
            skipped=result.items_skipped,
            failed=result.items_failed,
            has_more=result.has_more,
        )
        return result

    async def sync_all_integrations(self, user_id: str) -> list[SyncResult]:
        """Sync every connected provider for a user, one after another.

        A provider whose client is not registered is reported as a failed
        result instead of aborting the others.
        """
        results: list[SyncResult] = []
        for integration in await self._storage.list_integrations(user_id):
            if integration.provider not in self._registry:
                result = SyncResult(provider=integration.provider)
                result.errors.append(
                    SyncError(f"Integration {integration.provider} not found in registry")
                )
                results.append(result)
                continue
            results.append(await self.sync_integration(user_id, integration.provider))
        return results

    async def handle_push_items(
        self,
        user_id: str,
        provider: str,
        items: list[StandardIngestItem],
    ) -> SyncResult:
        """Ingest items pushed to us (webhooks, browser clips).

        Pushed items bypass the sync guard and leave the watermark alone.
        """
        result = SyncResult(provider=provider)
        for item in items:
            result.record(await self._process_item(user_id, item))
        result.success = True
        log.info(
            "push_items_ingested",
            user_id=user_id,
            provider=provider,
            processed=result.items_processed,
            failed=result.items_failed,
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ensure_fresh_tokens(
        self, client: ProviderClient, integration: Integration
    ) -> IntegrationTokens:
        tokens = integration.tokens
        if not tokens.needs_refresh(self._settings.token_refresh_buffer_seconds):
            return tokens

        try:
            refreshed = await client.refresh_tokens(tokens)
        except TokenRefreshError:
            raise
        except Exception as e:
            raise TokenRefreshError(f"Token refresh failed for {client.provider}: {e}") from e

        await self._storage.update_tokens(integration.user_id, integration.provider, refreshed)
        integration.tokens = refreshed
        log.info("tokens_refreshed", user_id=integration.user_id, provider=integration.provider)
        return refreshed

    async def _process_item(
        self,
        user_id: str,
        item: StandardIngestItem,
        *,
        dry_run: bool = False,
    ) -> ItemOutcome:
        try:
            upsert = await self._storage.upsert_ingested_item(user_id, item)
        except Exception as e:
            error = ItemPersistenceError(item.source_id, str(e))
            log.warning("item_persist_failed", source_id=item.source_id, error=str(e))
            return ItemOutcome(item.source_id, OutcomeKind.FAILED, str(error))

        if not upsert.changed:
            return ItemOutcome(item.source_id, OutcomeKind.UNCHANGED)

        kind = OutcomeKind.CREATED if upsert.is_new else OutcomeKind.UPDATED
        if dry_run:
            return ItemOutcome(item.source_id, kind)

        item_id = upsert.item.id
        assert item_id is not None
        pipeline_result = await self._pipeline.process(user_id, item)

        try:
            if pipeline_result.success:
                await self._storage.mark_item_processed(
                    item_id,
                    capture_id=pipeline_result.capture_id,
                    memory_ids=pipeline_result.memory_ids,
                    task_ids=pipeline_result.task_ids,
                )
                return ItemOutcome(item.source_id, kind)
            await self._storage.mark_item_failed(item_id, pipeline_result.error or "")
        except Exception as e:
            error = ItemPersistenceError(item.source_id, str(e))
            log.warning("item_status_update_failed", source_id=item.source_id, error=str(e))
            return ItemOutcome(item.source_id, OutcomeKind.FAILED, str(error))

        return ItemOutcome(item.source_id, OutcomeKind.FAILED, pipeline_result.error)

    def _next_sync_at(self, integration: Integration, has_more: bool) -> datetime:
        if has_more:
            return utcnow()
        interval = integration.metadata.get(
            "sync_interval_minutes", self._settings.default_sync_interval_minutes
        )
        return utcnow() + timedelta(minutes=int(interval))
