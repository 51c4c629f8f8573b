"""Derived artifact records and their PostgreSQL store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from brainsync.integrations.mappings import CaptureType
from brainsync.integrations.models import Priority
from brainsync.logging import get_logger

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-untyped]

log = get_logger("brainsync.ingestion.artifacts")


# ------------------------------------------------------------------
# Data models
# ------------------------------------------------------------------


@dataclass
class CaptureDraft:
    """A capture to create for an ingested item."""

    user_id: str
    content: str
    capture_type: CaptureType
    project_id: str | None = None


@dataclass
class MemoryDraft:
    """A key/value fact extracted for AI recall."""

    key: str
    value: str
    category: str
    confidence: int = 70
    source: str | None = None


@dataclass
class TaskDraft:
    """An AI-suggested task derived from an ingested item."""

    user_id: str
    title: str
    description: str
    priority: Priority = Priority.MEDIUM
    status: str = "backlog"
    ai_suggested: bool = True
    ai_rationale: str | None = None
    project_id: str | None = None


class ArtifactStore(Protocol):
    """Persistence for captures, memories and tasks."""

    async def create_capture(self, draft: CaptureDraft) -> str:
        """Create a capture and return its id."""
        ...

    async def upsert_memory(
        self, user_id: str, memory: MemoryDraft, *, project_id: str | None = None
    ) -> str:
        """Create or replace the memory keyed by (user, key); return its id."""
        ...

    async def create_task(self, draft: TaskDraft) -> str:
        """Create a task and return its id."""
        ...


# ------------------------------------------------------------------
# SQL schema
# ------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS captures (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT,
    type TEXT NOT NULL DEFAULT 'note',
    content TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS ai_memories (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'general',
    source TEXT,
    confidence INTEGER NOT NULL DEFAULT 70,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (user_id, key)
);

CREATE TABLE IF NOT EXISTS tasks (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'backlog',
    priority TEXT NOT NULL DEFAULT 'medium',
    ai_suggested BOOLEAN NOT NULL DEFAULT FALSE,
    ai_rationale TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_captures_user ON captures (user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks (user_id, status);
"""


class ArtifactStorage:
    """PostgreSQL implementation of ``ArtifactStore``."""

    def __init__(self) -> None:
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool reference."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_SCHEMA)
        log.info("artifact_storage.initialized")

    async def create_capture(self, draft: CaptureDraft) -> str:
        """Insert a capture. Returns the row id."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                """
                INSERT INTO captures (user_id, project_id, type, content)
                VALUES ($1, $2, $3, $4)
                RETURNING id
                """,
                draft.user_id,
                draft.project_id,
                draft.capture_type.value,
                draft.content,
            )
        return str(row["id"])  # type: ignore[index]

    async def upsert_memory(
        self, user_id: str, memory: MemoryDraft, *, project_id: str | None = None
    ) -> str:
        """Insert or replace a memory keyed by (user, key). Returns the row id."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                """
                INSERT INTO ai_memories
                    (user_id, project_id, key, value, category, source, confidence)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (user_id, key) DO UPDATE SET
                    value = EXCLUDED.value,
                    category = EXCLUDED.category,
                    source = EXCLUDED.source,
                    confidence = EXCLUDED.confidence,
                    project_id = COALESCE(EXCLUDED.project_id, ai_memories.project_id),
                    updated_at = NOW()
                RETURNING id
                """,
                user_id,
                project_id,
                memory.key,
                memory.value,
                memory.category,
                memory.source,
                memory.confidence,
            )
        return str(row["id"])  # type: ignore[index]

    async def create_task(self, draft: TaskDraft) -> str:
        """Insert a task. Returns the row id."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            row = await conn.fetchrow(
                """
                INSERT INTO tasks
                    (user_id, project_id, title, description, status, priority,
                     ai_suggested, ai_rationale)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING id
                """,
                draft.user_id,
                draft.project_id,
                draft.title,
                draft.description,
                draft.status,
                draft.priority.value,
                draft.ai_suggested,
                draft.ai_rationale,
            )
        return str(row["id"])  # type: ignore[index]
