"""Integration context for AI calls.

Builds a bounded, provider-diversified slice of a user's ingested items.
Two candidate paths feed it: recent items plus keyword matches from the
conversation, and a semantic search over item embeddings for explicit
follow-up queries. The semantic path degrades to keyword-only results
when the embedding service is unavailable.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from brainsync.constants import (
    ADDITIONAL_DATA_LIMIT,
    CONTEXT_MAX_ITEMS,
    CONTEXT_MAX_PER_PROVIDER,
    CONTEXT_RECENT_LIMIT,
    CONTEXT_SEARCH_LIMIT,
    CONTEXT_SEARCH_TERMS,
)
from brainsync.context.digest import build_integration_highlights, build_integration_summary
from brainsync.context.scoring import rank_items, select_diverse_items
from brainsync.context.terms import Message, extract_search_terms, extract_terms_from_query
from brainsync.integrations.models import IngestedItem, ItemStatus
from brainsync.integrations.storage import IntegrationStorage
from brainsync.logging import get_logger
from brainsync.memory.embeddings import EmbeddingsClient
from brainsync.utils import utcnow

log = get_logger("brainsync.context.engine")

# Items rendered into the prompt fragment
PROMPT_ITEMS = 10
PROMPT_CONTENT_CHARS = 280


@dataclass
class ContextItem:
    """One ingested item as handed to the AI call."""

    provider: str
    item_type: str
    title: str | None = None
    content: str | None = None
    source_url: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float | None = None

    @classmethod
    def from_ingested(cls, item: IngestedItem, score: float | None = None) -> ContextItem:
        return cls(
            provider=item.provider,
            item_type=str(item.item_type),
            title=item.title or None,
            content=item.content or None,
            source_url=item.source_url or None,
            created_at=item.created_at,
            metadata=dict(item.metadata),
            score=score,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "provider": self.provider,
            "item_type": self.item_type,
            "title": self.title,
            "content": self.content,
            "source_url": self.source_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "metadata": self.metadata,
        }


@dataclass
class IntegrationContext:
    """Selected items plus their digest lines."""

    items: list[ContextItem] = field(default_factory=list)
    summary: str | None = None
    highlights: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready payload for the AI-call surface."""
        return {
            "items": [item.to_dict() for item in self.items],
            "summary": self.summary,
            "highlights": list(self.highlights),
        }

    def to_prompt_fragment(self) -> str:
        """Convert the context into a text fragment for the system prompt."""
        parts: list[str] = []

        if self.summary:
            parts.append(self.summary)

        if self.highlights:
            parts.append("Highlights:")
            parts.extend(f"- {line}" for line in self.highlights)

        if self.items:
            parts.append("Connected data:")
            for item in self.items[:PROMPT_ITEMS]:
                label = item.title or item.item_type
                line = f"- [{item.provider}/{item.item_type}] {label}"
                if item.content:
                    snippet = " ".join(item.content.split())[:PROMPT_CONTENT_CHARS]
                    line += f": {snippet}"
                parts.append(line)

        return "\n".join(parts)

    @property
    def is_empty(self) -> bool:
        """Check if any item was selected."""
        return not self.items


def _item_key(item: IngestedItem) -> Any:
    if item.id is not None:
        return item.id
    return (item.provider, item.source_id)


def _merge_unique(*groups: Sequence[IngestedItem]) -> list[IngestedItem]:
    """Union by item identity; earlier groups win."""
    merged: dict[Any, IngestedItem] = {}
    for group in groups:
        for item in group:
            merged.setdefault(_item_key(item), item)
    return list(merged.values())


class IntegrationContextEngine:
    """Retrieves ingested items relevant to an AI call."""

    def __init__(
        self,
        storage: IntegrationStorage,
        embeddings: EmbeddingsClient | None = None,
    ) -> None:
        self._storage = storage
        self._embeddings = embeddings

    async def build_integration_context(
        self,
        user_id: str,
        messages: Sequence[Message],
        *,
        project_name: str | None = None,
        project_description: str | None = None,
        status: ItemStatus | None = ItemStatus.PROCESSED,
        recent_limit: int = CONTEXT_RECENT_LIMIT,
        search_limit: int = CONTEXT_SEARCH_LIMIT,
        max_items: int = CONTEXT_MAX_ITEMS,
        max_per_provider: int = CONTEXT_MAX_PER_PROVIDER,
        recent_days: int | None = None,
        now: datetime | None = None,
    ) -> IntegrationContext:
        """Recent and keyword-matched items, scored and diversified by provider.

        Args:
            user_id: Owner of the items.
            messages: Conversation turns as ``{"role", "content"}`` mappings.
            project_name: Extra text mixed into term extraction.
            project_description: Extra text mixed into term extraction.
            status: Item status to read, ``processed`` by default.
            recent_limit: Cap on the recent-items query.
            search_limit: Cap on the keyword query.
            max_items: Size of the selected slice.
            max_per_provider: Cap per provider after seeding.
            recent_days: Optional window on ``created_at``.
            now: Reference time for scoring.

        Returns:
            The selected items, ordered by descending score.
        """
        current = now or utcnow()
        terms = extract_search_terms(
            messages,
            CONTEXT_SEARCH_TERMS,
            [project_name or "", project_description or ""],
        )
        since = current - timedelta(days=recent_days) if recent_days else None

        recent_items, search_items = await asyncio.gather(
            self._storage.list_recent_items(
                user_id, status=status, since=since, limit=recent_limit
            ),
            self._storage.search_items_by_terms(
                user_id, terms, status=status, since=since, limit=search_limit
            ),
        )

        candidates = _merge_unique(recent_items, search_items)
        # Equal scores keep recent-first order.
        ranked = rank_items(candidates, terms, current)
        scores = {_item_key(item): score for item, score in ranked}
        selected = select_diverse_items(
            [item for item, _ in ranked], max_items=max_items, max_per_provider=max_per_provider
        )

        context = IntegrationContext(
            items=[
                ContextItem.from_ingested(item, scores[_item_key(item)]) for item in selected
            ],
            summary=build_integration_summary(selected, current),
            highlights=build_integration_highlights(selected),
        )

        log.info(
            "integration_context_built",
            user_id=user_id,
            terms=len(terms),
            candidates=len(candidates),
            selected=len(context.items),
        )
        return context

    async def fetch_additional_integration_data(
        self,
        user_id: str,
        query: str,
        *,
        provider: str | None = None,
        item_types: list[str] | None = None,
        since_days: int | None = None,
        limit: int = ADDITIONAL_DATA_LIMIT,
        now: datetime | None = None,
    ) -> IntegrationContext:
        """Semantic and keyword matches for an explicit query.

        Semantic matches come first; keyword matches fill in after them.
        """
        current = now or utcnow()
        since = current - timedelta(days=since_days) if since_days else None
        query_text = query.strip()

        semantic_items = await self._semantic_search(
            user_id,
            query_text,
            provider=provider,
            item_types=item_types,
            since=since,
            limit=limit,
        )

        terms = extract_terms_from_query(query_text)
        keyword_items = await self._storage.search_items_by_terms(
            user_id,
            terms,
            status=ItemStatus.PROCESSED,
            since=since,
            provider=provider,
            item_types=item_types,
            limit=limit,
        )
        keyword_items = [
            item
            for item in keyword_items
            if (not provider or item.provider == provider)
            and (not item_types or str(item.item_type) in item_types)
        ]

        merged = _merge_unique(semantic_items, keyword_items)[:limit]

        log.info(
            "additional_integration_data_fetched",
            user_id=user_id,
            semantic=len(semantic_items),
            keyword=len(keyword_items),
            returned=len(merged),
        )
        return IntegrationContext(
            items=[ContextItem.from_ingested(item) for item in merged],
            summary=build_integration_summary(merged, current),
            highlights=build_integration_highlights(merged),
        )

    async def _semantic_search(
        self,
        user_id: str,
        query_text: str,
        *,
        provider: str | None,
        item_types: list[str] | None,
        since: datetime | None,
        limit: int,
    ) -> list[IngestedItem]:
        if not query_text or self._embeddings is None:
            return []

        try:
            embedding = await self._embeddings.embed_query(query_text)
            if not embedding:
                return []
            return await self._storage.search_items_by_embedding(
                user_id,
                embedding,
                provider=provider,
                item_types=item_types,
                since=since,
                limit=limit,
            )
        except Exception as e:
            log.warning("semantic_search_degraded", user_id=user_id, error=str(e))
            return []
