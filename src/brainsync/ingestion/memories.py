"""Rules that turn an ingested item into AI memories.

Confidence values are fixed per rule; more specific rules score higher.
"""

from __future__ import annotations

from brainsync.constants import MEETING_MEMORY_SNIPPET_LENGTH
from brainsync.ingestion.artifacts import MemoryDraft
from brainsync.integrations.mappings import memory_category_for
from brainsync.integrations.models import IngestItemType, StandardIngestItem

SUMMARY_CONFIDENCE = 80
MEETING_CONFIDENCE = 85
HIGHLIGHT_CONFIDENCE = 90
TASK_CONFIDENCE = 85
RESOURCE_CONFIDENCE = 75
TAGS_CONFIDENCE = 80


def generate_memories(item: StandardIngestItem) -> list[MemoryDraft]:
    """Build the memories for ``item``; may be empty."""
    memories: list[MemoryDraft] = []
    source = f"{item.source_provider}:{item.source_id}"

    if item.summary:
        memories.append(
            MemoryDraft(
                key=f"{item.source_provider}_{item.item_type.value}_{item.source_id}",
                value=item.summary,
                category=memory_category_for(item.item_type),
                confidence=SUMMARY_CONFIDENCE,
                source=source,
            )
        )

    match item.item_type:
        case IngestItemType.MEETING if item.title:
            detail = item.summary or item.content[:MEETING_MEMORY_SNIPPET_LENGTH]
            memories.append(
                MemoryDraft(
                    key=f"meeting_{item.source_id}",
                    value=f"Meeting: {item.title}. {detail}",
                    category="meetings",
                    confidence=MEETING_CONFIDENCE,
                    source=source,
                )
            )
        case IngestItemType.HIGHLIGHT if item.content:
            memories.append(
                MemoryDraft(
                    key=f"highlight_{item.source_id}",
                    value=item.content,
                    category="reading_highlights",
                    confidence=HIGHLIGHT_CONFIDENCE,
                    source=source,
                )
            )
        case IngestItemType.TASK | IngestItemType.ISSUE if item.title:
            memories.append(
                MemoryDraft(
                    key=f"task_{item.source_id}",
                    value=f"Task: {item.title}",
                    category="tasks",
                    confidence=TASK_CONFIDENCE,
                    source=source,
                )
            )
        case IngestItemType.BOOKMARK | IngestItemType.ARTICLE if item.title and item.source_url:
            memories.append(
                MemoryDraft(
                    key=f"resource_{item.source_id}",
                    value=f"Saved: {item.title} - {item.source_url}",
                    category="resources",
                    confidence=RESOURCE_CONFIDENCE,
                    source=source,
                )
            )

    if item.metadata.tags:
        memories.append(
            MemoryDraft(
                key=f"tags_{item.source_id}",
                value=f"Tagged with: {', '.join(item.metadata.tags)}",
                category="tags",
                confidence=TAGS_CONFIDENCE,
                source=source,
            )
        )

    return memories
