"""Ingestion pipeline orchestrator.

Coordinates derivation for one normalized item:
1. Capture derivation (note / task / resource record)
2. Memory derivation (key/value facts for AI recall)
3. Task derivation (task-like items and items hinted to carry tasks)

Each stage can be skipped through ``PipelineOptions`` and fails on its
own; a failed stage is reported without blocking the others.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from brainsync.constants import TASK_TITLE_MAX_LENGTH
from brainsync.ingestion.artifacts import ArtifactStore, CaptureDraft, TaskDraft
from brainsync.ingestion.memories import generate_memories
from brainsync.integrations.errors import DerivationError
from brainsync.integrations.mappings import TASK_LIKE_TYPES, capture_type_for
from brainsync.integrations.models import Priority, StandardIngestItem
from brainsync.logging import get_logger

log = get_logger("brainsync.ingestion.pipeline")

STAGE_CAPTURE = "capture"
STAGE_MEMORIES = "memories"
STAGE_TASKS = "tasks"


@dataclass
class PipelineOptions:
    """Per-call switches for the pipeline."""

    skip_capture: bool = False
    skip_memories: bool = False
    skip_tasks: bool = False
    project_id: str | None = None


@dataclass
class PipelineResult:
    """Outcome of processing one item."""

    success: bool = False
    capture_id: str | None = None
    memory_ids: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    error: str | None = None
    stage_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "capture_id": self.capture_id,
            "memory_ids": self.memory_ids,
            "task_ids": self.task_ids,
            "error": self.error,
        }


def build_capture_content(item: StandardIngestItem) -> str:
    """Body prefixed with the title and suffixed with source attribution."""
    content = item.content
    if item.title and not content.startswith(item.title):
        content = f"{item.title}\n\n{content}"
    attribution = f"Source: {item.source_provider}"
    if item.source_url:
        attribution += f" | {item.source_url}"
    return f"{content}\n\n---\n{attribution}"


def should_extract_tasks(item: StandardIngestItem) -> bool:
    """Task-like items always yield a task; others only when hinted."""
    if item.item_type in TASK_LIKE_TYPES:
        return True
    return bool(item.processing_hints and item.processing_hints.extract_tasks)


class IngestionPipeline:
    """Derives captures, memories and tasks from normalized items."""

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    async def process(
        self,
        user_id: str,
        item: StandardIngestItem,
        options: PipelineOptions | None = None,
    ) -> PipelineResult:
        """Run every enabled stage for ``item``. Never raises."""
        opts = options or PipelineOptions()
        hints = item.processing_hints
        project_id = opts.project_id or (hints.link_to_project if hints else None)
        result = PipelineResult()

        if not opts.skip_capture:
            try:
                result.capture_id = await self._create_capture(user_id, item, project_id)
            except Exception as e:
                self._record_failure(result, item, DerivationError(STAGE_CAPTURE, str(e)))

        if not opts.skip_memories and (hints is None or hints.extract_memories):
            try:
                result.memory_ids = await self._extract_memories(user_id, item, project_id)
            except Exception as e:
                self._record_failure(result, item, DerivationError(STAGE_MEMORIES, str(e)))

        if not opts.skip_tasks and should_extract_tasks(item):
            try:
                result.task_ids = await self._extract_tasks(user_id, item, project_id)
            except Exception as e:
                self._record_failure(result, item, DerivationError(STAGE_TASKS, str(e)))

        result.success = not result.stage_errors
        if result.stage_errors:
            result.error = "; ".join(f"{s}: {m}" for s, m in result.stage_errors.items())

        log.debug(
            "pipeline_item_processed",
            provider=item.source_provider,
            source_id=item.source_id,
            capture=result.capture_id is not None,
            memories=len(result.memory_ids),
            tasks=len(result.task_ids),
            success=result.success,
        )
        return result

    async def process_batch(
        self,
        user_id: str,
        items: list[StandardIngestItem],
        options: PipelineOptions | None = None,
    ) -> list[PipelineResult]:
        """Process items one after another; results line up with ``items``."""
        results: list[PipelineResult] = []
        for item in items:
            results.append(await self.process(user_id, item, options))
        return results

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _create_capture(
        self, user_id: str, item: StandardIngestItem, project_id: str | None
    ) -> str:
        draft = CaptureDraft(
            user_id=user_id,
            content=build_capture_content(item),
            capture_type=capture_type_for(item.item_type),
            project_id=project_id,
        )
        return await self._store.create_capture(draft)

    async def _extract_memories(
        self, user_id: str, item: StandardIngestItem, project_id: str | None
    ) -> list[str]:
        memory_ids: list[str] = []
        for memory in generate_memories(item):
            memory_ids.append(
                await self._store.upsert_memory(user_id, memory, project_id=project_id)
            )
        return memory_ids

    async def _extract_tasks(
        self, user_id: str, item: StandardIngestItem, project_id: str | None
    ) -> list[str]:
        hints = item.processing_hints
        draft = TaskDraft(
            user_id=user_id,
            title=item.title or item.content[:TASK_TITLE_MAX_LENGTH],
            description=item.content,
            priority=(hints.priority if hints and hints.priority else Priority.MEDIUM),
            ai_suggested=True,
            ai_rationale=f"Imported from {item.source_provider}",
            project_id=project_id,
        )
        return [await self._store.create_task(draft)]

    @staticmethod
    def _record_failure(
        result: PipelineResult, item: StandardIngestItem, error: DerivationError
    ) -> None:
        result.stage_errors[error.stage] = str(error).removeprefix(f"{error.stage}: ")
        log.warning(
            "pipeline_stage_failed",
            stage=error.stage,
            provider=item.source_provider,
            source_id=item.source_id,
            error=str(error),
        )
