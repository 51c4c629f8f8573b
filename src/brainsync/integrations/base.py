"""Provider client capability and shared HTTP plumbing.

The sync orchestrator depends only on the ``ProviderClient`` protocol.
Concrete clients subclass ``HttpProviderClient`` for authenticated,
retrying httpx requests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from brainsync.constants import PROVIDER_FETCH_LIMIT
from brainsync.integrations.errors import ProviderFetchError
from brainsync.integrations.models import IntegrationTokens, StandardIngestItem
from brainsync.logging import get_logger

log = get_logger("brainsync.integrations.base")

DEFAULT_MAX_RETRIES = 3
MAX_RETRY_AFTER_SECONDS = 60.0


@dataclass
class FetchResult:
    """One page of normalized items from a provider."""

    items: list[StandardIngestItem] = field(default_factory=list)
    next_cursor: str | None = None


@runtime_checkable
class ProviderClient(Protocol):
    """Capability every provider integration exposes to the core."""

    provider: str

    async def fetch_items(
        self,
        tokens: IntegrationTokens,
        *,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch one page of items changed since ``since``."""
        ...

    async def get_account_info(self, tokens: IntegrationTokens) -> dict[str, Any]:
        """Return display metadata for the connected account."""
        ...

    async def refresh_tokens(self, tokens: IntegrationTokens) -> IntegrationTokens:
        """Return fresh credentials for an expiring token."""
        ...


async def collect_items(
    client: ProviderClient,
    tokens: IntegrationTokens,
    *,
    since: datetime | None = None,
    cursor: str | None = None,
    limit: int = PROVIDER_FETCH_LIMIT,
    on_page: Callable[[FetchResult], Awaitable[None]] | None = None,
) -> FetchResult:
    """Follow cursors until ``limit`` items are gathered or pages run out.

    ``on_page`` is awaited after each page. The returned ``next_cursor`` is
    set when more pages remain.
    """
    collected: list[StandardIngestItem] = []
    next_cursor = cursor
    while True:
        page = await client.fetch_items(tokens, since=since, cursor=next_cursor)
        collected.extend(page.items)
        if on_page is not None:
            await on_page(page)
        next_cursor = page.next_cursor
        if not next_cursor or len(collected) >= limit:
            break
    return FetchResult(items=collected, next_cursor=next_cursor)


class HttpProviderClient(ABC):
    """Base class for httpx-backed provider clients.

    Retries 429 and 5xx responses with ``Retry-After`` or exponential
    delays; other failures surface as ``ProviderFetchError``.
    """

    provider: str = ""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root for the provider.
            timeout: HTTP request timeout in seconds.
            max_retries: Attempts for retryable responses.
            retry_base_delay: First backoff delay in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._retry_base_delay = retry_base_delay
        self._transport = transport

    @abstractmethod
    def _auth_headers(self, tokens: IntegrationTokens) -> dict[str, str]:
        """Return authorization headers for a request."""

    @abstractmethod
    async def fetch_items(
        self,
        tokens: IntegrationTokens,
        *,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch one page of items."""

    async def refresh_tokens(self, tokens: IntegrationTokens) -> IntegrationTokens:
        """Token-based providers without refresh return credentials unchanged."""
        return tokens

    def _client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return httpx.AsyncClient(timeout=self._timeout)

    def _retry_delay(self, attempt: int, response: httpx.Response | None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), MAX_RETRY_AFTER_SECONDS)
                except ValueError:
                    pass
        return self._retry_base_delay * (2**attempt)

    async def _request(
        self,
        method: str,
        path: str,
        tokens: IntegrationTokens,
        *,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated request and return the decoded JSON body."""
        url = path if path.startswith("http") else f"{self._base_url}/{path.lstrip('/')}"
        last_error: ProviderFetchError | None = None

        async with self._client() as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.request(
                        method,
                        url,
                        headers=self._auth_headers(tokens),
                        params=params,
                        json=json_data,
                    )
                except httpx.RequestError as exc:
                    last_error = ProviderFetchError(f"{self.provider} request failed: {exc}")
                    if attempt + 1 < self._max_retries:
                        await asyncio.sleep(self._retry_delay(attempt, None))
                    continue

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = ProviderFetchError(
                        f"{self.provider} API error {response.status_code}",
                        status_code=response.status_code,
                    )
                    log.debug(
                        "provider_request_retry",
                        provider=self.provider,
                        status=response.status_code,
                        attempt=attempt + 1,
                    )
                    if attempt + 1 < self._max_retries:
                        await asyncio.sleep(self._retry_delay(attempt, response))
                    continue

                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    raise ProviderFetchError(
                        f"{self.provider} API error {exc.response.status_code}: "
                        f"{exc.response.text[:200]}",
                        status_code=exc.response.status_code,
                    ) from exc

                if not response.content:
                    return None
                return response.json()

        assert last_error is not None
        raise last_error
