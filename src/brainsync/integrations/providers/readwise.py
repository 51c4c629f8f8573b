"""Readwise provider client.

Pulls books and highlights from the Readwise export API. Each book
becomes an ``article`` item and each highlight a ``highlight`` item.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from brainsync.integrations.base import FetchResult, HttpProviderClient
from brainsync.integrations.errors import ProviderFetchError
from brainsync.integrations.models import (
    IngestItemMetadata,
    IngestItemType,
    IntegrationTokens,
    ProcessingHints,
    StandardIngestItem,
)
from brainsync.logging import get_logger
from brainsync.utils import utcnow

log = get_logger("brainsync.integrations.providers.readwise")

READWISE_API_BASE = "https://readwise.io/api/v2"


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _tag_names(tags: list[dict[str, Any]] | None) -> list[str]:
    return [t["name"] for t in tags or [] if t.get("name")]


class ReadwiseClient(HttpProviderClient):
    """Readwise export API client."""

    provider = "readwise"

    def __init__(self, base_url: str = READWISE_API_BASE, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)

    def _auth_headers(self, tokens: IntegrationTokens) -> dict[str, str]:
        return {"Authorization": f"Token {tokens.access_token}"}

    async def get_account_info(self, tokens: IntegrationTokens) -> dict[str, Any]:
        """Return the Readwise account email."""
        data = await self._request("GET", "/auth", tokens) or {}
        return {"account_email": data.get("email")}

    async def fetch_items(
        self,
        tokens: IntegrationTokens,
        *,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch one export page, flattening books and their highlights."""
        params: dict[str, Any] = {}
        if cursor:
            params["pageCursor"] = cursor
        if since:
            params["updatedAfter"] = since.isoformat()

        data = await self._request("GET", "/export/", tokens, params=params)
        if not isinstance(data, dict):
            raise ProviderFetchError("readwise export returned an unexpected payload")

        items: list[StandardIngestItem] = []
        for book in data.get("results", []):
            items.append(self.normalize_book(book))
            for highlight in book.get("highlights", []):
                items.append(self.normalize_highlight(highlight, book))

        log.debug(
            "readwise_page_fetched",
            books=len(data.get("results", [])),
            items=len(items),
            has_more=bool(data.get("nextPageCursor")),
        )
        return FetchResult(items=items, next_cursor=data.get("nextPageCursor"))

    def normalize_book(self, book: dict[str, Any]) -> StandardIngestItem:
        """Convert an export book into an article item."""
        title = book.get("readable_title") or book.get("title") or ""
        note = book.get("document_note") or None
        return StandardIngestItem(
            source_provider=self.provider,
            source_id=f"book_{book['user_book_id']}",
            source_url=book.get("readwise_url") or book.get("source_url"),
            item_type=IngestItemType.ARTICLE,
            title=title,
            content=note or f"{book.get('title', '')} by {book.get('author', 'unknown')}",
            summary=note,
            metadata=IngestItemMetadata(
                timestamp=utcnow(),
                author=book.get("author"),
                tags=_tag_names(book.get("book_tags")),
                custom={
                    "source": book.get("source"),
                    "category": book.get("category"),
                    "cover_image_url": book.get("cover_image_url"),
                    "highlight_count": len(book.get("highlights", [])),
                },
            ),
        )

    def normalize_highlight(
        self, highlight: dict[str, Any], book: dict[str, Any]
    ) -> StandardIngestItem:
        """Convert a highlight into a highlight item attributed to its book."""
        content = highlight.get("text", "")
        if highlight.get("note"):
            content += f"\n\n**Note:** {highlight['note']}"

        highlighted_at = _parse_datetime(highlight.get("highlighted_at"))
        return StandardIngestItem(
            source_provider=self.provider,
            source_id=f"highlight_{highlight['id']}",
            source_url=highlight.get("url") or book.get("readwise_url"),
            item_type=IngestItemType.HIGHLIGHT,
            title=f'Highlight from "{book.get("title", "")}"',
            content=content,
            metadata=IngestItemMetadata(
                timestamp=highlighted_at or utcnow(),
                created_at=highlighted_at,
                updated_at=_parse_datetime(highlight.get("updated")),
                author=book.get("author"),
                tags=_tag_names(highlight.get("tags")),
                custom={
                    "book_id": book.get("user_book_id"),
                    "book_title": book.get("title"),
                    "location": highlight.get("location"),
                    "location_type": highlight.get("location_type"),
                    "color": highlight.get("color"),
                },
            ),
            processing_hints=ProcessingHints(extract_memories=True),
        )
