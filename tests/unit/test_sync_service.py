"""Tests for IntegrationSyncService."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from brainsync.ingestion.pipeline import IngestionPipeline
from brainsync.integrations.base import FetchResult
from brainsync.integrations.errors import (
    IntegrationNotConnectedError,
    ProviderNotRegisteredError,
)
from brainsync.integrations.models import (
    Integration,
    IntegrationTokens,
    ItemStatus,
    StandardIngestItem,
    SyncStatus,
)
from brainsync.integrations.registry import ProviderRegistry
from brainsync.integrations.sync import (
    INTERRUPTED_MESSAGE,
    IntegrationSyncService,
    ItemOutcome,
    OutcomeKind,
    SyncResult,
    compute_backoff,
)
from brainsync.utils import utcnow

USER = "user-1"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _item(source_id: str, content: str = "text", item_type: str = "highlight"):
    return StandardIngestItem(
        source_provider="readwise",
        source_id=source_id,
        type=item_type,
        title=f"Item {source_id}",
        content=content,
    )


def _page(*source_ids: str, next_cursor: str | None = None) -> FetchResult:
    return FetchResult(items=[_item(s) for s in source_ids], next_cursor=next_cursor)


async def _connect(storage, provider: str = "readwise", **kwargs) -> Integration:
    tokens = kwargs.pop("tokens", None) or IntegrationTokens(access_token="tok")
    integration = Integration(user_id=USER, provider=provider, tokens=tokens, **kwargs)
    await storage.save_integration(integration)
    return integration


def _service(storage, artifact_store, settings, *clients) -> IntegrationSyncService:
    return IntegrationSyncService(
        storage,
        ProviderRegistry(list(clients)),
        IngestionPipeline(artifact_store),
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestComputeBackoff:
    """Tests for compute_backoff."""

    @pytest.mark.parametrize(
        ("errors", "minutes"), [(0, 0), (1, 15), (2, 30), (3, 60), (4, 120)]
    )
    def test_doubles_per_failure(self, errors, minutes):
        """The delay doubles with every consecutive failure."""
        assert compute_backoff(errors) == timedelta(minutes=minutes)

    def test_capped(self):
        """The delay never exceeds the maximum."""
        assert compute_backoff(4, base_minutes=600) == timedelta(minutes=1440)

    def test_pauses_at_error_cap(self):
        """Reaching the error cap pauses automatic syncs."""
        assert compute_backoff(5) is None
        assert compute_backoff(9) is None

    def test_service_uses_settings(self, storage, artifact_store, settings):
        """The service reads its limits from settings."""
        settings.sync_backoff_base_minutes = 10
        service = _service(storage, artifact_store, settings)
        assert service.compute_backoff(3) == timedelta(minutes=40)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TestSyncResult:
    """Tests for SyncResult bookkeeping."""

    def test_record_counts_each_outcome_once(self):
        """Every outcome lands in exactly one counter."""
        result = SyncResult(provider="readwise")
        for kind in OutcomeKind:
            result.record(ItemOutcome("x", kind, "bad" if kind is OutcomeKind.FAILED else None))

        assert result.items_processed == 4
        assert (
            result.items_created,
            result.items_updated,
            result.items_skipped,
            result.items_failed,
        ) == (1, 1, 1, 1)
        assert result.to_dict()["errors"] == [{"message": "bad", "source_id": "x"}]

    def test_outcome_ok(self):
        """Only failures are not ok."""
        assert ItemOutcome("a", OutcomeKind.UNCHANGED).ok
        assert not ItemOutcome("a", OutcomeKind.FAILED, "boom").ok


# ---------------------------------------------------------------------------
# sync_integration
# ---------------------------------------------------------------------------


class TestSyncIntegration:
    """Tests for IntegrationSyncService.sync_integration."""

    async def test_first_sync_ingests_everything(
        self, storage, artifact_store, settings, make_provider
    ):
        """New items are stored, processed and the watermark moves."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a", "b")])
        service = _service(storage, artifact_store, settings, provider)
        before = utcnow()

        result = await service.sync_integration(USER, "readwise")

        assert result.success is True
        assert result.items_processed == 2
        assert result.items_created == 2
        assert result.errors == []
        assert provider.fetch_calls[0]["since"] is None
        assert len(artifact_store.captures) == 2
        assert all(i.status is ItemStatus.PROCESSED for i in storage.items.values())

        state = await storage.get_sync_state(USER, "readwise")
        assert state.status is SyncStatus.IDLE
        assert state.last_successful_sync_at >= before
        assert state.total_items_synced == 2
        assert state.next_sync_at - state.last_successful_sync_at >= timedelta(minutes=14)

    async def test_resync_is_idempotent(self, storage, artifact_store, settings, make_provider):
        """Unchanged items are skipped without re-running the pipeline."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a", "b")])
        service = _service(storage, artifact_store, settings, provider)

        await service.sync_integration(USER, "readwise")
        second = await service.sync_integration(USER, "readwise")

        assert second.items_skipped == 2
        assert second.items_created == 0
        assert len(storage.items) == 2
        assert len(artifact_store.captures) == 2

    async def test_changed_content_is_updated(
        self, storage, artifact_store, settings, make_provider
    ):
        """A new content hash re-runs the pipeline for that item."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a")])
        service = _service(storage, artifact_store, settings, provider)
        await service.sync_integration(USER, "readwise")

        provider.pages = [FetchResult(items=[_item("a", content="edited")])]
        result = await service.sync_integration(USER, "readwise")

        assert result.items_updated == 1
        assert len(artifact_store.captures) == 2

    async def test_watermark_and_full_sync(self, storage, artifact_store, settings, make_provider):
        """Later runs fetch since the watermark unless a full sync is requested."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a")])
        service = _service(storage, artifact_store, settings, provider)

        await service.sync_integration(USER, "readwise")
        state = await storage.get_sync_state(USER, "readwise")
        await service.sync_integration(USER, "readwise")
        await service.sync_integration(USER, "readwise", full_sync=True)

        assert provider.fetch_calls[1]["since"] == state.last_successful_sync_at
        assert provider.fetch_calls[2]["since"] is None

    async def test_remaining_pages_resume_from_cursor(
        self, storage, artifact_store, settings, make_provider
    ):
        """A capped run keeps the watermark, stores the cursor and is due again."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a", "b", next_cursor="1"), _page("c")])
        service = _service(storage, artifact_store, settings, provider)

        first = await service.sync_integration(USER, "readwise", limit=2)
        state = await storage.get_sync_state(USER, "readwise")

        assert first.has_more is True
        assert state.cursor == "1"
        assert state.last_successful_sync_at is None
        assert state.next_sync_at <= utcnow()

        second = await service.sync_integration(USER, "readwise", limit=2)
        state = await storage.get_sync_state(USER, "readwise")

        assert provider.fetch_calls[1]["cursor"] == "1"
        assert second.has_more is False
        assert second.items_created == 1
        assert state.cursor is None
        assert state.last_successful_sync_at is not None

    async def test_sync_interval_from_metadata(
        self, storage, artifact_store, settings, make_provider
    ):
        """A per-integration interval schedules the next run."""
        await _connect(storage, metadata={"sync_interval_minutes": 60})
        service = _service(storage, artifact_store, settings, make_provider())

        await service.sync_integration(USER, "readwise")

        state = await storage.get_sync_state(USER, "readwise")
        assert state.next_sync_at - utcnow() > timedelta(minutes=59)

    async def test_provider_failure_marks_error(
        self, storage, artifact_store, settings, make_provider
    ):
        """A failed fetch records the error and backs off without moving the watermark."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a")])
        service = _service(storage, artifact_store, settings, provider)
        await service.sync_integration(USER, "readwise")
        watermark = (await storage.get_sync_state(USER, "readwise")).last_successful_sync_at

        provider.error = RuntimeError("Readwise API error 503")
        result = await service.sync_integration(USER, "readwise")

        assert result.success is False
        assert [e.message for e in result.errors] == ["Readwise API error 503"]
        state = await storage.get_sync_state(USER, "readwise")
        assert state.status is SyncStatus.ERROR
        assert state.error_count == 1
        assert state.last_error == "Readwise API error 503"
        assert state.last_successful_sync_at == watermark
        assert state.next_sync_at - utcnow() > timedelta(minutes=14)

        await service.sync_integration(USER, "readwise")
        state = await storage.get_sync_state(USER, "readwise")
        assert state.error_count == 2
        assert state.next_sync_at - utcnow() > timedelta(minutes=29)

    async def test_success_resets_error_count(
        self, storage, artifact_store, settings, make_provider
    ):
        """A successful run clears earlier failures."""
        await _connect(storage)
        provider = make_provider(error=RuntimeError("down"))
        service = _service(storage, artifact_store, settings, provider)
        await service.sync_integration(USER, "readwise")

        provider.error = None
        await service.sync_integration(USER, "readwise")

        state = await storage.get_sync_state(USER, "readwise")
        assert state.error_count == 0
        assert state.last_error is None

    async def test_blank_exception_message_uses_type(
        self, storage, artifact_store, settings, make_provider
    ):
        """Exceptions without a message are reported by type name."""
        await _connect(storage)
        service = _service(
            storage, artifact_store, settings, make_provider(error=RuntimeError())
        )

        result = await service.sync_integration(USER, "readwise")

        assert result.errors[0].message == "RuntimeError"

    async def test_concurrent_runs_are_serialized(
        self, storage, artifact_store, settings, make_provider
    ):
        """Only one of two overlapping runs does the work; the other is skipped."""
        await _connect(storage)
        provider = make_provider(pages=[_page("a")], delay=0.05)
        service = _service(storage, artifact_store, settings, provider)

        results = await asyncio.gather(
            service.sync_integration(USER, "readwise"),
            service.sync_integration(USER, "readwise"),
        )

        assert sorted(r.skipped for r in results) == [False, True]
        skipped = next(r for r in results if r.skipped)
        done = next(r for r in results if not r.skipped)
        assert skipped.success is False
        assert skipped.errors[0].message == "Sync already in progress for readwise"
        assert done.success is True
        assert len(provider.fetch_calls) == 1
        assert len(storage.items) == 1

    async def test_stale_sync_is_taken_over(
        self, storage, artifact_store, settings, make_provider
    ):
        """A run stuck in syncing past the stale window no longer blocks."""
        await _connect(storage)
        state = storage.states[(USER, "readwise")]
        state.status = SyncStatus.SYNCING
        state.updated_at = utcnow() - timedelta(minutes=31)
        service = _service(storage, artifact_store, settings, make_provider())

        result = await service.sync_integration(USER, "readwise")

        assert result.skipped is False
        assert result.success is True

    async def test_heartbeat_keeps_long_run_claimed(
        self, storage, artifact_store, settings, make_provider
    ):
        """Every page and item refreshes the claim, so a slow run is not taken over."""
        await _connect(storage)
        key = (USER, "readwise")
        rivals: list = []

        class SlowProvider(make_provider):
            async def fetch_items(self, tokens, *, since=None, cursor=None):
                if cursor == "1":
                    # The earlier pages took longer than the stale window.
                    storage.states[key].updated_at = utcnow() - timedelta(minutes=40)
                elif cursor == "2":
                    rivals.append(await storage.try_begin_sync(USER, "readwise"))
                return await super().fetch_items(tokens, since=since, cursor=cursor)

        provider = SlowProvider(
            pages=[_page("a", next_cursor="1"), _page("b", next_cursor="2"), _page("c")]
        )
        service = _service(storage, artifact_store, settings, provider)

        result = await service.sync_integration(USER, "readwise")

        assert rivals == [None]
        assert result.success is True
        assert result.items_created == 3
        assert storage.heartbeats == 6
        assert storage.states[key].total_items_synced == 3

    async def test_cancellation_releases_guard(
        self, storage, artifact_store, settings, make_provider
    ):
        """A cancelled run leaves the state out of syncing."""
        await _connect(storage)
        service = _service(storage, artifact_store, settings, make_provider(delay=1.0))

        task = asyncio.create_task(service.sync_integration(USER, "readwise"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        state = await storage.get_sync_state(USER, "readwise")
        assert state.status is SyncStatus.ERROR
        assert state.last_error == INTERRUPTED_MESSAGE

    async def test_partial_item_failure(self, storage, artifact_store, settings, make_provider):
        """One unstorable item is counted and the rest still land."""
        await _connect(storage)
        storage.fail_upsert_for.add("b")
        provider = make_provider(pages=[_page("a", "b", "c")])
        service = _service(storage, artifact_store, settings, provider)

        result = await service.sync_integration(USER, "readwise")

        assert result.success is True
        assert result.items_created == 2
        assert result.items_failed == 1
        assert result.errors[0].source_id == "b"
        assert result.errors[0].message == "Failed to persist b: connection reset"
        state = await storage.get_sync_state(USER, "readwise")
        assert state.status is SyncStatus.IDLE

    async def test_pipeline_failure_marks_item_failed(
        self, storage, artifact_store, settings, make_provider
    ):
        """A failed derivation stage fails the item, not the run."""
        await _connect(storage)
        artifact_store.fail_stages.add("capture")
        service = _service(storage, artifact_store, settings, make_provider(pages=[_page("a")]))

        result = await service.sync_integration(USER, "readwise")

        assert result.success is True
        assert result.items_failed == 1
        (stored,) = storage.items.values()
        assert stored.status is ItemStatus.FAILED
        assert storage.item_errors[stored.id] == "capture: captures table unavailable"

    async def test_dry_run_skips_pipeline(self, storage, artifact_store, settings, make_provider):
        """Dry runs store items but derive nothing."""
        await _connect(storage)
        service = _service(
            storage, artifact_store, settings, make_provider(pages=[_page("a", "b")])
        )

        result = await service.sync_integration(USER, "readwise", dry_run=True)

        assert result.items_created == 2
        assert artifact_store.captures == []
        assert all(i.status is ItemStatus.PENDING for i in storage.items.values())


class TestSyncPreconditions:
    """Tests for hard errors raised before a run starts."""

    async def test_not_connected(self, storage, artifact_store, settings, make_provider):
        """Syncing a provider the user never connected raises."""
        service = _service(storage, artifact_store, settings, make_provider())

        with pytest.raises(IntegrationNotConnectedError):
            await service.sync_integration(USER, "readwise")

        assert (USER, "readwise") not in storage.states

    async def test_not_registered(self, storage, artifact_store, settings):
        """Syncing a provider without a client raises."""
        await _connect(storage, provider="slack")
        service = _service(storage, artifact_store, settings)

        with pytest.raises(ProviderNotRegisteredError, match="slack"):
            await service.sync_integration(USER, "slack")


class TestTokenRefresh:
    """Tests for refreshing expiring credentials before a fetch."""

    async def test_expiring_token_is_refreshed(
        self, storage, artifact_store, settings, make_provider
    ):
        """Fresh credentials are stored and used for the fetch."""
        expiring = IntegrationTokens(
            access_token="old", refresh_token="r", expires_at=utcnow() + timedelta(seconds=60)
        )
        fresh = IntegrationTokens(
            access_token="new", refresh_token="r2", expires_at=utcnow() + timedelta(hours=1)
        )
        await _connect(storage, tokens=expiring)
        provider = make_provider(refreshed=fresh)
        service = _service(storage, artifact_store, settings, provider)

        result = await service.sync_integration(USER, "readwise")

        assert result.success is True
        assert provider.refresh_calls == 1
        assert provider.fetch_calls[0]["token"] == "new"
        assert (await storage.get_integration(USER, "readwise")).tokens.access_token == "new"

    async def test_valid_token_is_not_refreshed(
        self, storage, artifact_store, settings, make_provider
    ):
        """Tokens far from expiry are used as-is."""
        tokens = IntegrationTokens(
            access_token="tok", refresh_token="r", expires_at=utcnow() + timedelta(hours=2)
        )
        await _connect(storage, tokens=tokens)
        provider = make_provider()

        await _service(storage, artifact_store, settings, provider).sync_integration(
            USER, "readwise"
        )

        assert provider.refresh_calls == 0

    async def test_refresh_failure_fails_run(
        self, storage, artifact_store, settings, make_provider
    ):
        """A refresh error fails the run before anything is fetched."""
        expiring = IntegrationTokens(
            access_token="old", refresh_token="r", expires_at=utcnow() - timedelta(minutes=1)
        )
        await _connect(storage, tokens=expiring)
        provider = make_provider()
        service = _service(storage, artifact_store, settings, provider)

        result = await service.sync_integration(USER, "readwise")

        assert result.success is False
        assert result.errors[0].message == (
            "Token refresh failed for readwise: refresh endpoint rejected the token"
        )
        assert provider.fetch_calls == []
        state = await storage.get_sync_state(USER, "readwise")
        assert state.status is SyncStatus.ERROR


# ---------------------------------------------------------------------------
# sync_all_integrations / handle_push_items
# ---------------------------------------------------------------------------


class TestSyncAllIntegrations:
    """Tests for IntegrationSyncService.sync_all_integrations."""

    async def test_unregistered_provider_does_not_abort(
        self, storage, artifact_store, settings, make_provider
    ):
        """Each connected provider gets a result; unknown ones fail alone."""
        await _connect(storage, provider="readwise")
        await _connect(storage, provider="slack")
        service = _service(storage, artifact_store, settings, make_provider(pages=[_page("a")]))

        results = await service.sync_all_integrations(USER)

        by_provider = {r.provider: r for r in results}
        assert by_provider["readwise"].success is True
        assert by_provider["slack"].success is False
        assert by_provider["slack"].errors[0].message == "Integration slack not found in registry"

    async def test_no_integrations(self, storage, artifact_store, settings):
        """Users without integrations get an empty list."""
        assert await _service(storage, artifact_store, settings).sync_all_integrations(USER) == []


class TestHandlePushItems:
    """Tests for IntegrationSyncService.handle_push_items."""

    async def test_pushed_items_are_ingested(self, storage, artifact_store, settings):
        """Pushed items go through storage and the pipeline."""
        service = _service(storage, artifact_store, settings)

        result = await service.handle_push_items(USER, "readwise", [_item("a"), _item("b")])

        assert result.success is True
        assert result.items_created == 2
        assert len(artifact_store.captures) == 2
        assert (USER, "readwise") not in storage.states

    async def test_push_bypasses_sync_guard(self, storage, artifact_store, settings):
        """Pushes are accepted while a pull sync holds the guard."""
        await _connect(storage)
        await storage.try_begin_sync(USER, "readwise")
        service = _service(storage, artifact_store, settings)

        result = await service.handle_push_items(USER, "readwise", [_item("a")])

        assert result.items_created == 1
        state = await storage.get_sync_state(USER, "readwise")
        assert state.status is SyncStatus.SYNCING

    async def test_push_duplicates_are_skipped(self, storage, artifact_store, settings):
        """Re-pushing identical items is a no-op."""
        service = _service(storage, artifact_store, settings)
        await service.handle_push_items(USER, "readwise", [_item("a")])

        result = await service.handle_push_items(USER, "readwise", [_item("a")])

        assert result.items_skipped == 1
        assert len(artifact_store.captures) == 1
