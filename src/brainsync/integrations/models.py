"""Data models for provider integrations.

``StandardIngestItem`` is the normalized form every provider client
produces. ``IngestedItem`` and ``SyncState`` mirror the rows kept by
``IntegrationStorage``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from brainsync.utils import ensure_aware, utcnow

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class IngestItemType(StrEnum):
    """What kind of content an ingested item carries."""

    NOTE = "note"
    HIGHLIGHT = "highlight"
    MEETING = "meeting"
    TASK = "task"
    MESSAGE = "message"
    ARTICLE = "article"
    BOOKMARK = "bookmark"
    DOCUMENT = "document"
    EMAIL = "email"
    COMMENT = "comment"
    ISSUE = "issue"
    CLIP = "clip"


class ItemStatus(StrEnum):
    """Processing status of an ingested item."""

    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncStatus(StrEnum):
    """Sync state machine for one (user, provider) pair."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class Priority(StrEnum):
    """Priority hint carried by task-like items."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Normalized ingest item
# ---------------------------------------------------------------------------


class IngestItemMetadata(BaseModel):
    """Temporal, attribution and categorization data for an item."""

    timestamp: datetime = Field(default_factory=utcnow)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    author: str | None = None
    author_email: str | None = None
    author_id: str | None = None

    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)

    parent_id: str | None = None
    thread_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None

    custom: dict[str, Any] = Field(default_factory=dict)


class ProcessingHints(BaseModel):
    """Hints a provider attaches to steer the ingestion pipeline."""

    extract_tasks: bool = False
    extract_memories: bool = True
    link_to_project: str | None = None
    priority: Priority | None = None


class StandardIngestItem(BaseModel):
    """Normalized item produced by a provider client."""

    model_config = ConfigDict(populate_by_name=True)

    source_provider: str
    source_id: str = Field(min_length=1)
    source_url: str | None = None

    item_type: IngestItemType = Field(alias="type")

    title: str | None = None
    content: str = ""
    summary: str | None = None
    raw_content: str | None = None

    metadata: IngestItemMetadata = Field(default_factory=IngestItemMetadata)
    processing_hints: ProcessingHints | None = None

    def content_hash(self) -> str:
        """Stable hash of the content used to detect upstream edits."""
        basis = f"{self.title or ''}\n{self.content}"
        return hashlib.sha256(basis.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass
class IntegrationTokens:
    """OAuth or API credentials for one connected provider."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def needs_refresh(self, buffer_seconds: int = 300, *, now: datetime | None = None) -> bool:
        """True when the token expires within ``buffer_seconds``."""
        if self.expires_at is None or not self.refresh_token:
            return False
        current = now or utcnow()
        return ensure_aware(self.expires_at) - current < timedelta(seconds=buffer_seconds)


@dataclass
class Integration:
    """A user's connection to one provider."""

    user_id: str
    provider: str
    tokens: IntegrationTokens
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


@dataclass
class SyncState:
    """Progress and health of syncing one provider for one user."""

    user_id: str
    provider: str
    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: datetime | None = None
    last_successful_sync_at: datetime | None = None
    total_items_synced: int = 0
    error_count: int = 0
    last_error: str | None = None
    cursor: str | None = None
    next_sync_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "status": self.status.value,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_successful_sync_at": (
                self.last_successful_sync_at.isoformat()
                if self.last_successful_sync_at
                else None
            ),
            "total_items_synced": self.total_items_synced,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "next_sync_at": self.next_sync_at.isoformat() if self.next_sync_at else None,
        }


# ---------------------------------------------------------------------------
# Persisted item
# ---------------------------------------------------------------------------


@dataclass
class IngestedItem:
    """Normalized, persisted representation of one external item."""

    user_id: str
    provider: str
    source_id: str
    item_type: IngestItemType
    title: str | None = None
    content: str | None = None
    source_url: str | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    status: ItemStatus = ItemStatus.PENDING
    content_hash: str | None = None
    embedding: list[float] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_ingest_item(cls, user_id: str, item: StandardIngestItem) -> IngestedItem:
        """Build the persisted form of a normalized item."""
        return cls(
            user_id=user_id,
            provider=item.source_provider,
            source_id=item.source_id,
            item_type=item.item_type,
            title=item.title,
            content=item.content,
            source_url=item.source_url,
            raw_data=item.model_dump(mode="json", by_alias=True),
            metadata=item.metadata.model_dump(mode="json"),
            status=ItemStatus.PENDING,
            content_hash=item.content_hash(),
            created_at=item.metadata.created_at or item.metadata.timestamp,
        )


@dataclass
class UpsertResult:
    """Outcome of a keyed upsert into the ingested-item store."""

    item: IngestedItem
    is_new: bool
    updated: bool = False

    @property
    def changed(self) -> bool:
        """True when the stored row was inserted or its content changed."""
        return self.is_new or self.updated
