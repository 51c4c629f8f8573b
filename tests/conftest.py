"""Shared fixtures: in-memory stand-ins for the PostgreSQL stores and providers.

The in-memory storage mirrors the SQL semantics of ``IntegrationStorage``:
the conditional sync guard, content-hash upserts and the backoff formula.
Its methods never suspend between check and write, so they are atomic
under asyncio just like the single SQL statements they replace.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from brainsync.config import Settings
from brainsync.ingestion.artifacts import CaptureDraft, MemoryDraft, TaskDraft
from brainsync.integrations.base import FetchResult
from brainsync.integrations.models import (
    IngestedItem,
    IngestItemType,
    Integration,
    IntegrationTokens,
    ItemStatus,
    StandardIngestItem,
    SyncState,
    SyncStatus,
    UpsertResult,
)
from brainsync.utils import ensure_aware, utcnow

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# In-memory integration storage
# ---------------------------------------------------------------------------


class InMemoryIntegrationStorage:
    """Dict-backed replacement for ``IntegrationStorage``."""

    def __init__(self) -> None:
        self.integrations: dict[tuple[str, str], Integration] = {}
        self.states: dict[tuple[str, str], SyncState] = {}
        self.items: dict[tuple[str, str, str], IngestedItem] = {}
        self.item_errors: dict[int, str] = {}
        self.item_artifacts: dict[int, dict] = {}
        self.embedding_status: dict[int, str] = {}
        self.fail_upsert_for: set[str] = set()
        self.heartbeats = 0
        self._next_id = 1

    # Integrations

    async def save_integration(self, integration: Integration) -> None:
        key = (integration.user_id, integration.provider)
        self.integrations[key] = integration
        self.states.setdefault(
            key, SyncState(user_id=integration.user_id, provider=integration.provider)
        )

    async def update_tokens(self, user_id: str, provider: str, tokens: IntegrationTokens) -> None:
        self.integrations[(user_id, provider)].tokens = tokens

    async def get_integration(self, user_id: str, provider: str) -> Integration | None:
        return self.integrations.get((user_id, provider))

    async def list_integrations(self, user_id: str) -> list[Integration]:
        return [i for (uid, _), i in sorted(self.integrations.items()) if uid == user_id]

    # Sync state

    async def get_sync_state(self, user_id: str, provider: str) -> SyncState | None:
        state = self.states.get((user_id, provider))
        return dataclasses.replace(state) if state else None

    async def try_begin_sync(
        self, user_id: str, provider: str, *, stale_after_minutes: int = 30
    ) -> SyncState | None:
        now = utcnow()
        state = self.states.get((user_id, provider))
        if state is None:
            state = SyncState(user_id=user_id, provider=provider)
            self.states[(user_id, provider)] = state
        elif (
            state.status == SyncStatus.SYNCING
            and state.updated_at is not None
            and state.updated_at >= now - timedelta(minutes=stale_after_minutes)
        ):
            return None
        state.status = SyncStatus.SYNCING
        state.updated_at = now
        return dataclasses.replace(state)

    async def heartbeat_sync(self, user_id: str, provider: str) -> None:
        self.heartbeats += 1
        state = self.states.get((user_id, provider))
        if state is not None and state.status == SyncStatus.SYNCING:
            state.updated_at = utcnow()

    async def complete_sync(
        self,
        user_id: str,
        provider: str,
        *,
        items_processed: int,
        synced_at: datetime | None,
        next_sync_at: datetime | None,
        cursor: str | None = None,
    ) -> SyncState:
        state = self.states[(user_id, provider)]
        state.status = SyncStatus.IDLE
        state.last_sync_at = utcnow()
        state.last_successful_sync_at = synced_at
        state.total_items_synced += items_processed
        state.error_count = 0
        state.last_error = None
        state.cursor = cursor
        state.next_sync_at = next_sync_at
        state.updated_at = utcnow()
        return dataclasses.replace(state)

    async def fail_sync(
        self,
        user_id: str,
        provider: str,
        *,
        error: str,
        backoff_base_minutes: int,
        backoff_max_minutes: int,
    ) -> SyncState:
        state = self.states[(user_id, provider)]
        delay = min(backoff_max_minutes, backoff_base_minutes * 2**state.error_count)
        state.status = SyncStatus.ERROR
        state.last_sync_at = utcnow()
        state.error_count += 1
        state.last_error = error
        state.next_sync_at = utcnow() + timedelta(minutes=delay)
        state.updated_at = utcnow()
        return dataclasses.replace(state)

    async def list_due_sync_states(
        self, limit: int, *, stale_after_minutes: int = 30, max_error_count: int = 5
    ) -> list[SyncState]:
        now = utcnow()
        due = []
        for state in self.states.values():
            if state.status == SyncStatus.SYNCING:
                if state.updated_at and state.updated_at < now - timedelta(
                    minutes=stale_after_minutes
                ):
                    due.append(state)
            elif (
                state.next_sync_at is None or state.next_sync_at <= now
            ) and state.error_count < max_error_count:
                due.append(state)
        return [dataclasses.replace(s) for s in due[:limit]]

    # Items

    def add_item(self, item: IngestedItem) -> IngestedItem:
        """Seed a stored item directly, assigning an id."""
        item.id = self._next_id
        self._next_id += 1
        self.items[(item.user_id, item.provider, item.source_id)] = item
        return item

    async def upsert_ingested_item(self, user_id: str, item: StandardIngestItem) -> UpsertResult:
        if item.source_id in self.fail_upsert_for:
            raise RuntimeError("connection reset")
        record = IngestedItem.from_ingest_item(user_id, item)
        key = (user_id, record.provider, record.source_id)
        existing = self.items.get(key)
        if existing is None:
            stored = self.add_item(record)
            return UpsertResult(item=dataclasses.replace(stored), is_new=True)
        if existing.content_hash == record.content_hash:
            return UpsertResult(item=dataclasses.replace(existing), is_new=False)
        record.id = existing.id
        record.created_at = existing.created_at
        self.items[key] = record
        return UpsertResult(item=dataclasses.replace(record), is_new=False, updated=True)

    def _by_id(self, item_id: int) -> IngestedItem:
        return next(i for i in self.items.values() if i.id == item_id)

    async def mark_item_processed(
        self,
        item_id: int,
        *,
        capture_id: str | None,
        memory_ids: list[str],
        task_ids: list[str],
    ) -> None:
        self._by_id(item_id).status = ItemStatus.PROCESSED
        self.item_artifacts[item_id] = {
            "capture_id": capture_id,
            "memory_ids": list(memory_ids),
            "task_ids": list(task_ids),
        }

    async def mark_item_failed(self, item_id: int, error: str) -> None:
        self._by_id(item_id).status = ItemStatus.FAILED
        self.item_errors[item_id] = error

    def _filter(
        self,
        user_id: str,
        *,
        status: ItemStatus | None = None,
        since: datetime | None = None,
        provider: str | None = None,
        item_types: list[str] | None = None,
    ) -> list[IngestedItem]:
        found = []
        for item in self.items.values():
            if item.user_id != user_id:
                continue
            if status is not None and item.status != status:
                continue
            if since is not None and (
                item.created_at is None or ensure_aware(item.created_at) < since
            ):
                continue
            if provider is not None and item.provider != provider:
                continue
            if item_types and str(item.item_type) not in item_types:
                continue
            found.append(item)
        return found

    @staticmethod
    def _newest_first(items: list[IngestedItem]) -> list[IngestedItem]:
        return sorted(items, key=lambda i: i.created_at or _EPOCH, reverse=True)

    async def list_recent_items(
        self,
        user_id: str,
        *,
        status: ItemStatus | None = ItemStatus.PROCESSED,
        since: datetime | None = None,
        limit: int = 60,
    ) -> list[IngestedItem]:
        return self._newest_first(self._filter(user_id, status=status, since=since))[:limit]

    async def search_items_by_terms(
        self,
        user_id: str,
        terms: list[str],
        *,
        status: ItemStatus | None = ItemStatus.PROCESSED,
        since: datetime | None = None,
        provider: str | None = None,
        item_types: list[str] | None = None,
        limit: int = 60,
    ) -> list[IngestedItem]:
        if not terms:
            return []
        matched = [
            item
            for item in self._filter(
                user_id, status=status, since=since, provider=provider, item_types=item_types
            )
            if any(
                t.lower() in (item.title or "").lower() or t.lower() in (item.content or "").lower()
                for t in terms
            )
        ]
        return self._newest_first(matched)[:limit]

    async def search_items_by_embedding(
        self,
        user_id: str,
        embedding: list[float],
        *,
        provider: str | None = None,
        item_types: list[str] | None = None,
        since: datetime | None = None,
        limit: int = 25,
    ) -> list[IngestedItem]:
        candidates = [
            item
            for item in self._filter(user_id, since=since, provider=provider, item_types=item_types)
            if item.embedding
        ]
        candidates.sort(
            key=lambda i: sum(a * b for a, b in zip(i.embedding or [], embedding, strict=False)),
            reverse=True,
        )
        return candidates[:limit]

    async def list_items_missing_embeddings(self, limit: int = 40) -> list[IngestedItem]:
        pending = [
            item
            for item in self.items.values()
            if item.embedding is None
            and item.status == ItemStatus.PROCESSED
            and self.embedding_status.get(item.id or 0, "pending") == "pending"
        ]
        return pending[:limit]

    async def store_embedding(self, item_id: int, vector: list[float]) -> None:
        self._by_id(item_id).embedding = list(vector)
        self.embedding_status[item_id] = "embedded"

    async def mark_embedding_failed(self, item_id: int, error: str) -> None:
        self.embedding_status[item_id] = "failed"


# ---------------------------------------------------------------------------
# In-memory artifact store
# ---------------------------------------------------------------------------


class InMemoryArtifactStore:
    """Records derived artifacts; ``fail_stages`` makes a stage raise."""

    def __init__(self) -> None:
        self.captures: list[CaptureDraft] = []
        self.memories: dict[tuple[str, str], MemoryDraft] = {}
        self.tasks: list[TaskDraft] = []
        self.fail_stages: set[str] = set()

    async def create_capture(self, draft: CaptureDraft) -> str:
        if "capture" in self.fail_stages:
            raise RuntimeError("captures table unavailable")
        self.captures.append(draft)
        return f"capture-{len(self.captures)}"

    async def upsert_memory(
        self, user_id: str, memory: MemoryDraft, *, project_id: str | None = None
    ) -> str:
        if "memories" in self.fail_stages:
            raise RuntimeError("memories table unavailable")
        self.memories[(user_id, memory.key)] = memory
        return f"memory-{memory.key}"

    async def create_task(self, draft: TaskDraft) -> str:
        if "tasks" in self.fail_stages:
            raise RuntimeError("tasks table unavailable")
        self.tasks.append(draft)
        return f"task-{len(self.tasks)}"


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """Provider client serving canned pages.

    ``delay`` suspends inside ``fetch_items`` so concurrent runs overlap.
    """

    def __init__(
        self,
        provider: str = "readwise",
        pages: list[FetchResult] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        refreshed: IntegrationTokens | None = None,
    ) -> None:
        self.provider = provider
        self.pages = pages or [FetchResult()]
        self.delay = delay
        self.error = error
        self.refreshed = refreshed
        self.fetch_calls: list[dict] = []
        self.refresh_calls = 0

    async def fetch_items(
        self,
        tokens: IntegrationTokens,
        *,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        self.fetch_calls.append({"since": since, "cursor": cursor, "token": tokens.access_token})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        index = int(cursor) if cursor else 0
        return self.pages[index]

    async def get_account_info(self, tokens: IntegrationTokens) -> dict:
        return {"account_email": "reader@example.com"}

    async def refresh_tokens(self, tokens: IntegrationTokens) -> IntegrationTokens:
        self.refresh_calls += 1
        if self.refreshed is None:
            raise RuntimeError("refresh endpoint rejected the token")
        return self.refreshed


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(  # type: ignore[call-arg]
        _env_file=None, environment="test", cron_secret="cron-secret"
    )


@pytest.fixture
def storage() -> InMemoryIntegrationStorage:
    return InMemoryIntegrationStorage()


@pytest.fixture
def artifact_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    """Factory for fake provider clients."""
    return FakeProvider


@pytest.fixture
def make_ingested_item(storage: InMemoryIntegrationStorage) -> Callable[..., IngestedItem]:
    """Factory that seeds a processed item into the in-memory storage."""
    counter = iter(range(1, 10_000))

    def _make(
        provider: str = "slack",
        *,
        title: str | None = "Item",
        content: str | None = "",
        item_type: str = "message",
        age: timedelta = timedelta(hours=1),
        user_id: str = "user-1",
        embedding: list[float] | None = None,
        status: ItemStatus = ItemStatus.PROCESSED,
    ) -> IngestedItem:
        return storage.add_item(
            IngestedItem(
                user_id=user_id,
                provider=provider,
                source_id=f"{provider}-{next(counter)}",
                item_type=IngestItemType(item_type),
                title=title,
                content=content,
                status=status,
                embedding=embedding,
                created_at=utcnow() - age,
            )
        )

    return _make
