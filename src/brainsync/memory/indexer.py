"""Backfills embedding vectors for ingested items."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from brainsync.constants import EMBEDDING_BATCH_LIMIT
from brainsync.integrations.storage import IntegrationStorage
from brainsync.logging import get_logger
from brainsync.memory.embeddings import EmbeddingsClient, build_embedding_text

log = get_logger("brainsync.memory.indexer")


@dataclass
class IndexerReport:
    """Counts from one backfill run."""

    processed: int = 0
    embedded: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


class EmbeddingIndexer:
    """Embeds items that do not have a vector yet, one at a time."""

    def __init__(self, storage: IntegrationStorage, embeddings: EmbeddingsClient) -> None:
        self._storage = storage
        self._embeddings = embeddings

    async def run(self, limit: int = EMBEDDING_BATCH_LIMIT) -> IndexerReport:
        """Embed up to ``limit`` pending items."""
        report = IndexerReport()
        pending = await self._storage.list_items_missing_embeddings(limit)

        for item in pending:
            report.processed += 1
            assert item.id is not None
            text = build_embedding_text(item.title, item.content)
            if not text:
                await self._storage.mark_embedding_failed(item.id, "Empty embedding text")
                report.failed += 1
                continue

            try:
                vector = await self._embeddings.embed(text)
            except Exception as e:
                log.warning("embedding_failed", item_id=item.id, error=str(e))
                await self._storage.mark_embedding_failed(item.id, str(e))
                report.failed += 1
                continue

            if not vector:
                await self._storage.mark_embedding_failed(item.id, "Embedding generation failed")
                report.failed += 1
                continue

            await self._storage.store_embedding(item.id, vector)
            report.embedded += 1

        log.info("embedding_backfill_complete", **report.to_dict())
        return report
