"""Main entry point for brainsync."""

import asyncio

import asyncpg
from aiohttp import web

from brainsync.config import get_settings
from brainsync.context.engine import IntegrationContextEngine
from brainsync.ingestion.artifacts import ArtifactStorage
from brainsync.ingestion.pipeline import IngestionPipeline
from brainsync.integrations.providers import ReadwiseClient, TodoistClient
from brainsync.integrations.registry import ProviderRegistry
from brainsync.integrations.scheduler import SyncScheduler
from brainsync.integrations.storage import IntegrationStorage
from brainsync.integrations.sync import IntegrationSyncService
from brainsync.logging import get_logger, setup_logging
from brainsync.memory.embeddings import (
    EmbeddingsClient,
    get_embedding_dimension,
    get_embeddings_client,
)
from brainsync.memory.indexer import EmbeddingIndexer
from brainsync.server import SyncServer


def build_registry() -> ProviderRegistry:
    """Register the built-in provider clients."""
    settings = get_settings()
    return ProviderRegistry(
        [
            ReadwiseClient(settings.readwise_api_base, timeout=settings.provider_timeout),
            TodoistClient(settings.todoist_api_base, timeout=settings.provider_timeout),
        ]
    )


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("brainsync.main")

    settings = get_settings()
    log.info(
        "starting_brainsync",
        environment=settings.environment,
        embeddings_backend=settings.embeddings_backend,
    )

    pool = await asyncpg.create_pool(settings.postgres_dsn.get_secret_value())

    storage = IntegrationStorage(embedding_dimensions=get_embedding_dimension())
    await storage.initialize(pool)
    artifacts = ArtifactStorage()
    await artifacts.initialize(pool)

    # Semantic search is optional; retrieval falls back to keywords without it
    embeddings: EmbeddingsClient | None
    try:
        embeddings = get_embeddings_client()
    except ValueError as e:
        log.warning("embeddings_disabled", error=str(e))
        embeddings = None

    registry = build_registry()
    service = IntegrationSyncService(storage, registry, IngestionPipeline(artifacts))
    server = SyncServer(
        storage=storage,
        service=service,
        scheduler=SyncScheduler(storage, service),
        indexer=EmbeddingIndexer(storage, embeddings) if embeddings else None,
        context_engine=IntegrationContextEngine(storage, embeddings),
        api_secret=settings.cron_secret.get_secret_value() if settings.cron_secret else None,
        allow_unauthenticated=settings.is_development,
    )
    log.info("providers_registered", providers=registry.providers())

    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, settings.http_host, settings.http_port)

    try:
        await site.start()
        log.info("server_started", host=settings.http_host, port=settings.http_port)
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("shutdown_requested")
    finally:
        await runner.cleanup()
        if embeddings:
            await embeddings.close()
        await pool.close()
        log.info("brainsync_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
