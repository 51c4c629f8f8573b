"""Type-indexed lookup tables shared by ingestion and retrieval."""

from __future__ import annotations

from enum import StrEnum
from types import MappingProxyType

from brainsync.integrations.models import IngestItemType


class CaptureType(StrEnum):
    """Kinds of capture records derived from ingested items."""

    NOTE = "note"
    TASK = "task"
    RESOURCE = "resource"


CAPTURE_TYPE_BY_ITEM_TYPE: MappingProxyType[IngestItemType, CaptureType] = MappingProxyType(
    {
        IngestItemType.NOTE: CaptureType.NOTE,
        IngestItemType.HIGHLIGHT: CaptureType.NOTE,
        IngestItemType.MEETING: CaptureType.NOTE,
        IngestItemType.TASK: CaptureType.TASK,
        IngestItemType.MESSAGE: CaptureType.NOTE,
        IngestItemType.ARTICLE: CaptureType.RESOURCE,
        IngestItemType.BOOKMARK: CaptureType.RESOURCE,
        IngestItemType.DOCUMENT: CaptureType.NOTE,
        IngestItemType.EMAIL: CaptureType.NOTE,
        IngestItemType.COMMENT: CaptureType.NOTE,
        IngestItemType.ISSUE: CaptureType.TASK,
        IngestItemType.CLIP: CaptureType.RESOURCE,
    }
)

DEFAULT_MEMORY_CATEGORY = "general"

MEMORY_CATEGORY_BY_ITEM_TYPE: MappingProxyType[IngestItemType, str] = MappingProxyType(
    {
        IngestItemType.MEETING: "meetings",
        IngestItemType.HIGHLIGHT: "reading_highlights",
        IngestItemType.TASK: "tasks",
        IngestItemType.ISSUE: "tasks",
        IngestItemType.BOOKMARK: "resources",
        IngestItemType.ARTICLE: "resources",
    }
)

# Assumed actionability of each item type when ranking context.
ITEM_TYPE_WEIGHTS: MappingProxyType[IngestItemType, float] = MappingProxyType(
    {
        IngestItemType.EMAIL: 0.35,
        IngestItemType.MEETING: 0.30,
        IngestItemType.TASK: 0.30,
        IngestItemType.ISSUE: 0.25,
        IngestItemType.MESSAGE: 0.20,
        IngestItemType.DOCUMENT: 0.20,
        IngestItemType.NOTE: 0.15,
        IngestItemType.HIGHLIGHT: 0.10,
        IngestItemType.ARTICLE: 0.10,
        IngestItemType.COMMENT: 0.10,
        IngestItemType.BOOKMARK: 0.05,
        IngestItemType.CLIP: 0.05,
    }
)

TASK_LIKE_TYPES: frozenset[IngestItemType] = frozenset({IngestItemType.TASK, IngestItemType.ISSUE})


def capture_type_for(item_type: IngestItemType | str) -> CaptureType:
    """Capture type for an item type, defaulting to a note."""
    try:
        return CAPTURE_TYPE_BY_ITEM_TYPE[IngestItemType(item_type)]
    except ValueError:
        return CaptureType.NOTE


def memory_category_for(item_type: IngestItemType | str) -> str:
    """Memory category for an item type."""
    try:
        return MEMORY_CATEGORY_BY_ITEM_TYPE.get(IngestItemType(item_type), DEFAULT_MEMORY_CATEGORY)
    except ValueError:
        return DEFAULT_MEMORY_CATEGORY


def type_weight_for(item_type: IngestItemType | str | None) -> float:
    """Ranking boost for an item type; unknown types get no boost."""
    if not item_type:
        return 0.0
    try:
        return ITEM_TYPE_WEIGHTS.get(IngestItemType(item_type), 0.0)
    except ValueError:
        return 0.0
