"""PostgreSQL storage for integrations, sync state and ingested items.

Follows the ``initialize(pool)`` lifecycle used by the other stores::

    storage = IntegrationStorage()
    await storage.initialize(pool)
    result = await storage.upsert_ingested_item(user_id, item)

Writes to ``integration_sync_state`` are single conditional statements so
the ``syncing`` guard and the counters stay correct under concurrent runs.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

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
from brainsync.logging import get_logger

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-untyped]

log = get_logger("brainsync.integrations.storage")

DEFAULT_EMBEDDING_DIMENSIONS = 1536


# ------------------------------------------------------------------
# SQL schema
# ------------------------------------------------------------------

_SCHEMA = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS integrations (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TIMESTAMPTZ,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (user_id, provider)
);

CREATE TABLE IF NOT EXISTS integration_sync_state (
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    last_sync_at TIMESTAMPTZ,
    last_successful_sync_at TIMESTAMPTZ,
    total_items_synced INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    cursor TEXT,
    next_sync_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, provider),
    FOREIGN KEY (user_id, provider)
        REFERENCES integrations (user_id, provider) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS ingested_items (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    source_id TEXT NOT NULL,
    source_url TEXT,
    item_type TEXT NOT NULL,
    title TEXT,
    content TEXT,
    raw_data JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    status TEXT NOT NULL DEFAULT 'pending',
    content_hash TEXT,
    capture_id TEXT,
    memory_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    task_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    error TEXT,
    embedding vector({dimensions}),
    embedding_status TEXT NOT NULL DEFAULT 'pending',
    embedding_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (user_id, provider, source_id)
);

CREATE INDEX IF NOT EXISTS idx_ingested_items_user_created
    ON ingested_items (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_ingested_items_user_status
    ON ingested_items (user_id, status);
CREATE INDEX IF NOT EXISTS idx_sync_state_next
    ON integration_sync_state (status, next_sync_at);
"""

_ITEM_COLUMNS = """
    id, user_id, provider, source_id, source_url, item_type, title, content,
    raw_data, metadata, status, content_hash, created_at, updated_at
"""

_SYNC_COLUMNS = """
    user_id, provider, status, last_sync_at, last_successful_sync_at,
    total_items_synced, error_count, last_error, cursor, next_sync_at, updated_at
"""


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _vector_literal(vector: list[float]) -> str:
    """pgvector text form: ``[0.1,0.2,...]``."""
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


def _row_to_item(row: Any) -> IngestedItem:
    return IngestedItem(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        source_id=row["source_id"],
        source_url=row["source_url"],
        item_type=IngestItemType(row["item_type"]),
        title=row["title"],
        content=row["content"],
        raw_data=_loads(row["raw_data"], {}),
        metadata=_loads(row["metadata"], {}),
        status=ItemStatus(row["status"]),
        content_hash=row["content_hash"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_sync_state(row: Any) -> SyncState:
    return SyncState(
        user_id=row["user_id"],
        provider=row["provider"],
        status=SyncStatus(row["status"]),
        last_sync_at=row["last_sync_at"],
        last_successful_sync_at=row["last_successful_sync_at"],
        total_items_synced=row["total_items_synced"],
        error_count=row["error_count"],
        last_error=row["last_error"],
        cursor=row["cursor"],
        next_sync_at=row["next_sync_at"],
        updated_at=row["updated_at"],
    )


def _row_to_integration(row: Any) -> Integration:
    return Integration(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        tokens=IntegrationTokens(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
        ),
        metadata=_loads(row["metadata"], {}),
        created_at=row["created_at"],
    )


class IntegrationStorage:
    """PostgreSQL store for connected integrations and their data."""

    def __init__(self, *, embedding_dimensions: int = DEFAULT_EMBEDDING_DIMENSIONS) -> None:
        self._pool: asyncpg.Pool | None = None
        self._embedding_dimensions = embedding_dimensions

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA.format(dimensions=self._embedding_dimensions))
        log.info("integration_storage.initialized")

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    async def save_integration(self, integration: Integration) -> None:
        """Upsert credentials for (user, provider) and create its sync state."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO integrations
                        (user_id, provider, access_token, refresh_token, expires_at, metadata)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (user_id, provider) DO UPDATE SET
                        access_token = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        expires_at = EXCLUDED.expires_at,
                        metadata = EXCLUDED.metadata,
                        updated_at = NOW()
                    """,
                    integration.user_id,
                    integration.provider,
                    integration.tokens.access_token,
                    integration.tokens.refresh_token,
                    integration.tokens.expires_at,
                    json.dumps(integration.metadata),
                )
                await conn.execute(
                    """
                    INSERT INTO integration_sync_state (user_id, provider)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id, provider) DO NOTHING
                    """,
                    integration.user_id,
                    integration.provider,
                )
        log.info(
            "integration_saved",
            user_id=integration.user_id,
            provider=integration.provider,
        )

    async def update_tokens(self, user_id: str, provider: str, tokens: IntegrationTokens) -> None:
        """Persist refreshed credentials."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE integrations
                SET access_token = $3, refresh_token = $4, expires_at = $5, updated_at = NOW()
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider,
                tokens.access_token,
                tokens.refresh_token,
                tokens.expires_at,
            )

    async def get_integration(self, user_id: str, provider: str) -> Integration | None:
        """Get the user's connection to ``provider``."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                """
                SELECT id, user_id, provider, access_token, refresh_token, expires_at,
                       metadata, created_at
                FROM integrations
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider,
            )
        return _row_to_integration(row) if row else None

    async def list_integrations(self, user_id: str) -> list[Integration]:
        """All providers the user has connected."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                """
                SELECT id, user_id, provider, access_token, refresh_token, expires_at,
                       metadata, created_at
                FROM integrations
                WHERE user_id = $1
                ORDER BY provider
                """,
                user_id,
            )
        return [_row_to_integration(row) for row in rows]

    async def delete_integration(self, user_id: str, provider: str) -> bool:
        """Disconnect and drop the provider's sync state and ingested items."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM ingested_items WHERE user_id = $1 AND provider = $2",
                    user_id,
                    provider,
                )
                result = await conn.execute(
                    "DELETE FROM integrations WHERE user_id = $1 AND provider = $2",
                    user_id,
                    provider,
                )
        deleted = bool(result) and result.split()[-1] != "0"
        if deleted:
            log.info("integration_deleted", user_id=user_id, provider=provider)
        return deleted

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    async def get_sync_state(self, user_id: str, provider: str) -> SyncState | None:
        """Current sync state for (user, provider)."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"SELECT {_SYNC_COLUMNS} FROM integration_sync_state "  # nosec B608
                "WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        return _row_to_sync_state(row) if row else None

    async def try_begin_sync(
        self,
        user_id: str,
        provider: str,
        *,
        stale_after_minutes: int = 30,
    ) -> SyncState | None:
        """Atomically move the pair to ``syncing``.

        Returns the claimed state, or ``None`` when another run holds it.
        A ``syncing`` row untouched for ``stale_after_minutes`` belongs to a
        crashed run and may be taken over.
        """
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                INSERT INTO integration_sync_state (user_id, provider, status, updated_at)
                VALUES ($1, $2, 'syncing', NOW())
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    status = 'syncing',
                    updated_at = NOW()
                WHERE integration_sync_state.status <> 'syncing'
                   OR integration_sync_state.updated_at
                      < NOW() - INTERVAL '1 minute' * $3
                RETURNING {_SYNC_COLUMNS}
                """,  # nosec B608
                user_id,
                provider,
                stale_after_minutes,
            )
        return _row_to_sync_state(row) if row else None

    async def heartbeat_sync(self, user_id: str, provider: str) -> None:
        """Refresh ``updated_at`` of a running sync so it is not seen as stale."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE integration_sync_state SET updated_at = NOW()
                WHERE user_id = $1 AND provider = $2 AND status = 'syncing'
                """,
                user_id,
                provider,
            )

    async def complete_sync(
        self,
        user_id: str,
        provider: str,
        *,
        items_processed: int,
        synced_at: datetime,
        next_sync_at: datetime | None,
        cursor: str | None = None,
    ) -> SyncState | None:
        """Mark a run successful and advance the watermark."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                UPDATE integration_sync_state SET
                    status = 'idle',
                    last_sync_at = NOW(),
                    last_successful_sync_at = $3,
                    total_items_synced = total_items_synced + $4,
                    error_count = 0,
                    last_error = NULL,
                    cursor = $5,
                    next_sync_at = $6,
                    updated_at = NOW()
                WHERE user_id = $1 AND provider = $2
                RETURNING {_SYNC_COLUMNS}
                """,  # nosec B608
                user_id,
                provider,
                synced_at,
                items_processed,
                cursor,
                next_sync_at,
            )
        return _row_to_sync_state(row) if row else None

    async def fail_sync(
        self,
        user_id: str,
        provider: str,
        *,
        error: str,
        backoff_base_minutes: int,
        backoff_max_minutes: int,
    ) -> SyncState | None:
        """Record a failed run; the watermark is left untouched.

        ``next_sync_at`` backs off exponentially from the new error count.
        """
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                UPDATE integration_sync_state SET
                    status = 'error',
                    last_sync_at = NOW(),
                    error_count = error_count + 1,
                    last_error = $3,
                    next_sync_at = NOW() + INTERVAL '1 minute'
                        * LEAST($5::float8, $4::float8 * power(2, error_count)),
                    updated_at = NOW()
                WHERE user_id = $1 AND provider = $2
                RETURNING {_SYNC_COLUMNS}
                """,  # nosec B608
                user_id,
                provider,
                error,
                backoff_base_minutes,
                backoff_max_minutes,
            )
        return _row_to_sync_state(row) if row else None

    async def list_due_sync_states(
        self,
        limit: int,
        *,
        stale_after_minutes: int = 30,
        max_error_count: int = 5,
    ) -> list[SyncState]:
        """Sync states whose next run is due, oldest first."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"""
                SELECT {_SYNC_COLUMNS}
                FROM integration_sync_state
                WHERE (
                    status <> 'syncing'
                    AND (next_sync_at IS NULL OR next_sync_at <= NOW())
                    AND error_count < $3
                ) OR (
                    status = 'syncing'
                    AND updated_at < NOW() - INTERVAL '1 minute' * $2
                )
                ORDER BY next_sync_at ASC NULLS FIRST
                LIMIT $1
                """,  # nosec B608
                limit,
                stale_after_minutes,
                max_error_count,
            )
        return [_row_to_sync_state(row) for row in rows]

    # ------------------------------------------------------------------
    # Ingested items
    # ------------------------------------------------------------------

    async def upsert_ingested_item(self, user_id: str, item: StandardIngestItem) -> UpsertResult:
        """Insert or update the item keyed by (user, provider, source_id).

        An unchanged content hash leaves the row untouched.
        """
        record = IngestedItem.from_ingest_item(user_id, item)
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                f"""
                INSERT INTO ingested_items
                    (user_id, provider, source_id, source_url, item_type, title, content,
                     raw_data, metadata, status, content_hash, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 'pending', $10,
                        COALESCE($11, NOW()))
                ON CONFLICT (user_id, provider, source_id) DO UPDATE SET
                    source_url = EXCLUDED.source_url,
                    item_type = EXCLUDED.item_type,
                    title = EXCLUDED.title,
                    content = EXCLUDED.content,
                    raw_data = EXCLUDED.raw_data,
                    metadata = EXCLUDED.metadata,
                    content_hash = EXCLUDED.content_hash,
                    status = 'pending',
                    error = NULL,
                    embedding = NULL,
                    embedding_status = 'pending',
                    updated_at = NOW()
                WHERE ingested_items.content_hash IS DISTINCT FROM EXCLUDED.content_hash
                RETURNING {_ITEM_COLUMNS}, (xmax = 0) AS inserted
                """,  # nosec B608
                record.user_id,
                record.provider,
                record.source_id,
                record.source_url,
                record.item_type.value,
                record.title,
                record.content,
                json.dumps(record.raw_data),
                json.dumps(record.metadata),
                record.content_hash,
                record.created_at,
            )
            if row is not None:
                inserted = bool(row["inserted"])
                return UpsertResult(item=_row_to_item(row), is_new=inserted, updated=not inserted)

            existing = await conn.fetchrow(
                f"SELECT {_ITEM_COLUMNS} FROM ingested_items "  # nosec B608
                "WHERE user_id = $1 AND provider = $2 AND source_id = $3",
                record.user_id,
                record.provider,
                record.source_id,
            )
        return UpsertResult(item=_row_to_item(existing), is_new=False, updated=False)

    async def mark_item_processed(
        self,
        item_id: int,
        *,
        capture_id: str | None,
        memory_ids: list[str],
        task_ids: list[str],
    ) -> None:
        """Record derived artifact ids and mark the item processed."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE ingested_items
                SET status = 'processed', capture_id = $2, memory_ids = $3, task_ids = $4,
                    error = NULL, updated_at = NOW()
                WHERE id = $1
                """,
                item_id,
                capture_id,
                json.dumps(memory_ids),
                json.dumps(task_ids),
            )

    async def mark_item_failed(self, item_id: int, error: str) -> None:
        """Mark an item whose derivation failed."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                "UPDATE ingested_items SET status = 'failed', error = $2, updated_at = NOW() "
                "WHERE id = $1",
                item_id,
                error,
            )

    async def list_recent_items(
        self,
        user_id: str,
        *,
        status: ItemStatus | None = ItemStatus.PROCESSED,
        since: datetime | None = None,
        limit: int = 60,
    ) -> list[IngestedItem]:
        """Most recent items for a user."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"""
                SELECT {_ITEM_COLUMNS}
                FROM ingested_items
                WHERE user_id = $1
                  AND ($2::text IS NULL OR status = $2)
                  AND ($3::timestamptz IS NULL OR created_at >= $3)
                ORDER BY created_at DESC
                LIMIT $4
                """,  # nosec B608
                user_id,
                status.value if status else None,
                since,
                limit,
            )
        return [_row_to_item(row) for row in rows]

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
        """Items whose title or content contains any of ``terms``."""
        if not terms:
            return []
        patterns = [f"%{term}%" for term in terms]
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"""
                SELECT {_ITEM_COLUMNS}
                FROM ingested_items
                WHERE user_id = $1
                  AND (title ILIKE ANY($2::text[]) OR content ILIKE ANY($2::text[]))
                  AND ($3::text IS NULL OR status = $3)
                  AND ($4::timestamptz IS NULL OR created_at >= $4)
                  AND ($5::text IS NULL OR provider = $5)
                  AND ($6::text[] IS NULL OR item_type = ANY($6::text[]))
                ORDER BY created_at DESC
                LIMIT $7
                """,  # nosec B608
                user_id,
                patterns,
                status.value if status else None,
                since,
                provider,
                item_types or None,
                limit,
            )
        return [_row_to_item(row) for row in rows]

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
        """Nearest neighbours by cosine distance."""
        if not embedding:
            return []
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"""
                SELECT {_ITEM_COLUMNS}
                FROM ingested_items
                WHERE user_id = $1
                  AND embedding IS NOT NULL
                  AND ($3::text IS NULL OR provider = $3)
                  AND ($4::text[] IS NULL OR item_type = ANY($4::text[]))
                  AND ($5::timestamptz IS NULL OR created_at >= $5)
                ORDER BY embedding <=> $2::vector
                LIMIT $6
                """,  # nosec B608
                user_id,
                _vector_literal(embedding),
                provider,
                item_types or None,
                since,
                limit,
            )
        return [_row_to_item(row) for row in rows]

    # ------------------------------------------------------------------
    # Embedding queue
    # ------------------------------------------------------------------

    async def list_items_missing_embeddings(self, limit: int = 40) -> list[IngestedItem]:
        """Processed items that still need a vector."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            rows = await conn.fetch(
                f"""
                SELECT {_ITEM_COLUMNS}
                FROM ingested_items
                WHERE embedding IS NULL
                  AND embedding_status = 'pending'
                  AND status = 'processed'
                ORDER BY created_at DESC
                LIMIT $1
                """,  # nosec B608
                limit,
            )
        return [_row_to_item(row) for row in rows]

    async def store_embedding(self, item_id: int, vector: list[float]) -> None:
        """Attach an embedding vector to an item."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                UPDATE ingested_items
                SET embedding = $2::vector, embedding_status = 'embedded',
                    embedding_error = NULL
                WHERE id = $1
                """,
                item_id,
                _vector_literal(vector),
            )

    async def mark_embedding_failed(self, item_id: int, error: str) -> None:
        """Stop retrying the embedding for an item."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                "UPDATE ingested_items SET embedding_status = 'failed', embedding_error = $2 "
                "WHERE id = $1",
                item_id,
                error,
            )
