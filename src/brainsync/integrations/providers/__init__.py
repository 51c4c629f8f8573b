"""Concrete provider clients."""

from brainsync.integrations.providers.readwise import ReadwiseClient
from brainsync.integrations.providers.todoist import TodoistClient

__all__ = ["ReadwiseClient", "TodoistClient"]
