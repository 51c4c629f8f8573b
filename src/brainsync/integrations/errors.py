"""Error taxonomy for integration sync, ingestion and retrieval."""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for integration errors."""


class SyncInProgressError(IntegrationError):
    """Raised when a sync for the same (user, provider) is already running.

    Callers treat this as a skip, never as a failure.
    """

    def __init__(self, user_id: str, provider: str) -> None:
        super().__init__(f"Sync already in progress for {provider}")
        self.user_id = user_id
        self.provider = provider


class ProviderFetchError(IntegrationError):
    """Raised when the external provider call fails (network, auth, rate limit)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenRefreshError(ProviderFetchError):
    """Raised when refreshing an expiring access token fails."""


class ItemPersistenceError(IntegrationError):
    """Raised when a single ingested item cannot be stored."""

    def __init__(self, source_id: str, message: str) -> None:
        super().__init__(f"Failed to persist {source_id}: {message}")
        self.source_id = source_id


class DerivationError(IntegrationError):
    """Raised when a capture, memory or task cannot be derived from an item."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class EmbeddingError(IntegrationError):
    """Raised when an embedding cannot be produced."""


class IntegrationNotConnectedError(IntegrationError):
    """Raised when the user has no stored credentials for the provider."""

    def __init__(self, user_id: str, provider: str) -> None:
        super().__init__(f"User has not connected {provider}")
        self.user_id = user_id
        self.provider = provider


class ProviderNotRegisteredError(IntegrationError):
    """Raised when no client is registered for a provider."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Integration {provider} not found in registry")
        self.provider = provider
