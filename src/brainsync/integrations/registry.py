"""Injected table of provider clients."""

from __future__ import annotations

from collections.abc import Iterable

from brainsync.integrations.base import ProviderClient
from brainsync.integrations.errors import ProviderNotRegisteredError
from brainsync.logging import get_logger

log = get_logger("brainsync.integrations.registry")


class ProviderRegistry:
    """Maps provider ids to client instances.

    Built once at startup and handed to the sync service, so the
    orchestrator never branches on provider identity.
    """

    def __init__(self, clients: Iterable[ProviderClient] = ()) -> None:
        self._clients: dict[str, ProviderClient] = {}
        for client in clients:
            self.register(client)

    def register(self, client: ProviderClient) -> None:
        """Add or replace the client for ``client.provider``."""
        if not client.provider:
            raise ValueError("provider client must declare a provider id")
        self._clients[client.provider] = client
        log.debug("provider_registered", provider=client.provider)

    def get(self, provider: str) -> ProviderClient:
        """Return the client for ``provider``."""
        try:
            return self._clients[provider]
        except KeyError:
            raise ProviderNotRegisteredError(provider) from None

    def providers(self) -> list[str]:
        """Registered provider ids, sorted."""
        return sorted(self._clients)

    def __contains__(self, provider: object) -> bool:
        return provider in self._clients

    def __len__(self) -> int:
        return len(self._clients)
