"""Todoist provider client.

Active tasks become ``task`` items. Todoist priorities run 1 (normal)
to 4 (urgent).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from brainsync.integrations.base import FetchResult, HttpProviderClient
from brainsync.integrations.models import (
    IngestItemMetadata,
    IngestItemType,
    IntegrationTokens,
    Priority,
    ProcessingHints,
    StandardIngestItem,
)
from brainsync.logging import get_logger
from brainsync.utils import utcnow

log = get_logger("brainsync.integrations.providers.todoist")

TODOIST_API_BASE = "https://api.todoist.com/rest/v2"

PRIORITY_BY_TODOIST_LEVEL: dict[int, Priority] = {
    1: Priority.LOW,
    2: Priority.MEDIUM,
    3: Priority.MEDIUM,
    4: Priority.HIGH,
}


class TodoistClient(HttpProviderClient):
    """Todoist REST API client."""

    provider = "todoist"

    def __init__(self, base_url: str = TODOIST_API_BASE, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    def _auth_headers(self, tokens: IntegrationTokens) -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens.access_token}"}

    async def get_account_info(self, tokens: IntegrationTokens) -> dict[str, Any]:
        """Todoist REST has no user endpoint; report project stats instead."""
        projects = await self._request("GET", "/projects", tokens) or []
        inbox = next((p for p in projects if p.get("is_inbox_project")), None)
        return {
            "account_name": "Todoist User",
            "project_count": len(projects),
            "inbox_project_id": inbox.get("id") if inbox else None,
        }

    async def fetch_items(
        self,
        tokens: IntegrationTokens,
        *,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch all active tasks.

        The REST API is unpaginated and exposes no modification time, so
        ``since`` is ignored and edits are picked up by content-hash dedup.
        """
        projects = await self._request("GET", "/projects", tokens) or []
        project_names = {p["id"]: p.get("name") for p in projects if "id" in p}
        tasks = await self._request("GET", "/tasks", tokens) or []

        items = [
            self.normalize_task(task, project_names.get(task.get("project_id"))) for task in tasks
        ]
        log.debug("todoist_tasks_fetched", tasks=len(tasks), items=len(items))
        return FetchResult(items=items)

    def normalize_task(
        self, task: dict[str, Any], project_name: str | None = None
    ) -> StandardIngestItem:
        """Convert a Todoist task into a task item."""
        content = task.get("content", "")
        if task.get("description"):
            content += f"\n\n{task['description']}"

        created_at = None
        if task.get("created_at"):
            created_at = datetime.fromisoformat(task["created_at"].replace("Z", "+00:00"))
        due = task.get("due") or {}

        return StandardIngestItem(
            source_provider=self.provider,
            source_id=str(task["id"]),
            source_url=task.get("url"),
            item_type=IngestItemType.TASK,
            title=task.get("content"),
            content=content,
            metadata=IngestItemMetadata(
                timestamp=created_at or utcnow(),
                created_at=created_at,
                tags=list(task.get("labels", [])),
                custom={
                    "project_id": task.get("project_id"),
                    "project_name": project_name,
                    "section_id": task.get("section_id"),
                    "parent_id": task.get("parent_id"),
                    "priority": task.get("priority"),
                    "is_completed": task.get("is_completed", False),
                    "due_date": due.get("date"),
                    "due_string": due.get("string"),
                    "is_recurring": due.get("is_recurring"),
                },
            ),
            processing_hints=ProcessingHints(
                extract_tasks=True,
                priority=PRIORITY_BY_TODOIST_LEVEL.get(task.get("priority", 1), Priority.MEDIUM),
            ),
        )
