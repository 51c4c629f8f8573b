"""HTTP trigger surface for brainsync.

Cron jobs call ``/cron/*`` to run due syncs and the embedding backfill.
The ``/integrations`` routes trigger a manual sync, accept pushed items
and report sync status. ``/context/search`` exposes follow-up retrieval.
Every route except ``/health`` needs ``Authorization: Bearer <secret>``.
"""

from __future__ import annotations

import hmac
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from brainsync.constants import ADDITIONAL_DATA_LIMIT
from brainsync.context.engine import IntegrationContextEngine
from brainsync.integrations.errors import (
    IntegrationNotConnectedError,
    ProviderNotRegisteredError,
)
from brainsync.integrations.models import StandardIngestItem
from brainsync.integrations.scheduler import SyncScheduler
from brainsync.integrations.storage import IntegrationStorage
from brainsync.integrations.sync import IntegrationSyncService
from brainsync.logging import get_logger
from brainsync.memory.indexer import EmbeddingIndexer

log = get_logger("brainsync.server")


class ContextSearchRequest(BaseModel):
    """Body of POST /context/search."""

    user_id: str = Field(min_length=1)
    query: str = ""
    provider: str | None = None
    item_types: list[str] | None = None
    since_days: int | None = Field(default=None, ge=1)
    limit: int = Field(default=ADDITIONAL_DATA_LIMIT, ge=1)


class SyncServer:
    """aiohttp application wrapping the sync, indexing and retrieval services."""

    def __init__(
        self,
        *,
        storage: IntegrationStorage,
        service: IntegrationSyncService,
        scheduler: SyncScheduler,
        indexer: EmbeddingIndexer | None = None,
        context_engine: IntegrationContextEngine | None = None,
        api_secret: str | None = None,
        allow_unauthenticated: bool = False,
    ) -> None:
        """Initialize the server.

        Args:
            storage: Integration storage, used for status reads.
            service: Sync service for manual syncs and pushed items.
            scheduler: Batch driver for the cron sync route.
            indexer: Embedding backfill for the cron embeddings route.
            context_engine: Retrieval engine for ``/context/search``.
            api_secret: Bearer secret. When unset, requests are accepted only
                if ``allow_unauthenticated`` is True (development).
            allow_unauthenticated: Accept requests without a configured secret.
        """
        self._storage = storage
        self._service = service
        self._scheduler = scheduler
        self._indexer = indexer
        self._context_engine = context_engine
        self._api_secret = api_secret
        self._allow_unauthenticated = allow_unauthenticated

    def _check_auth(self, request: web.Request) -> bool:
        if not self._api_secret:
            return self._allow_unauthenticated
        header = request.headers.get("Authorization", "")
        return hmac.compare_digest(header, f"Bearer {self._api_secret}")

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if request.path != "/health" and not self._check_auth(request):
            log.warning("unauthorized_request", path=request.path)
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    def create_app(self) -> web.Application:
        """Build the aiohttp application."""
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_get("/health", self.handle_health)
        app.router.add_route("*", "/cron/integrations-sync", self.handle_cron_sync)
        app.router.add_route("*", "/cron/embeddings", self.handle_cron_embeddings)
        app.router.add_post("/integrations/{provider}/sync", self.handle_manual_sync)
        app.router.add_post("/integrations/{provider}/push", self.handle_push)
        app.router.add_get("/integrations/{provider}/status", self.handle_status)
        app.router.add_post("/context/search", self.handle_context_search)
        return app

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def handle_cron_sync(self, request: web.Request) -> web.Response:
        if request.method not in ("GET", "POST"):
            raise web.HTTPMethodNotAllowed(request.method, ["GET", "POST"])
        try:
            report = await self._scheduler.run_due_syncs()
        except Exception as e:
            log.error("cron_sync_failed", error=str(e))
            return web.json_response({"error": "Internal server error"}, status=500)
        return web.json_response({"success": True, **report.to_dict()})

    async def handle_cron_embeddings(self, request: web.Request) -> web.Response:
        if request.method not in ("GET", "POST"):
            raise web.HTTPMethodNotAllowed(request.method, ["GET", "POST"])
        if self._indexer is None:
            return web.json_response({"error": "Embeddings are not configured"}, status=503)
        try:
            report = await self._indexer.run()
        except Exception as e:
            log.error("cron_embeddings_failed", error=str(e))
            return web.json_response({"error": "Internal server error"}, status=500)
        return web.json_response({"success": True, **report.to_dict()})

    async def handle_manual_sync(self, request: web.Request) -> web.Response:
        provider = request.match_info["provider"]
        body = await _read_json(request)
        if body is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)
        user_id = body.get("user_id")
        if not user_id:
            return web.json_response({"error": "Missing 'user_id'"}, status=400)

        try:
            result = await self._service.sync_integration(
                str(user_id),
                provider,
                full_sync=bool(body.get("full_sync", False)),
                dry_run=bool(body.get("dry_run", False)),
            )
        except (IntegrationNotConnectedError, ProviderNotRegisteredError) as e:
            return web.json_response({"error": str(e)}, status=404)
        except Exception as e:
            log.error("manual_sync_failed", provider=provider, error=str(e))
            return web.json_response({"error": "Internal server error"}, status=500)

        status = 409 if result.skipped else 200
        return web.json_response(result.to_dict(), status=status)

    async def handle_push(self, request: web.Request) -> web.Response:
        provider = request.match_info["provider"]
        body = await _read_json(request)
        if body is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)
        user_id = body.get("user_id")
        raw_items = body.get("items")
        if not user_id or not isinstance(raw_items, list):
            return web.json_response({"error": "Expected 'user_id' and 'items'"}, status=400)

        try:
            items = [
                StandardIngestItem.model_validate({**raw, "source_provider": provider})
                for raw in raw_items
            ]
        except (ValidationError, TypeError) as e:
            return web.json_response({"error": f"Invalid items: {e}"}, status=400)

        result = await self._service.handle_push_items(str(user_id), provider, items)
        return web.json_response(result.to_dict())

    async def handle_status(self, request: web.Request) -> web.Response:
        provider = request.match_info["provider"]
        user_id = request.query.get("user_id")
        if not user_id:
            return web.json_response({"error": "Missing 'user_id'"}, status=400)

        state = await self._storage.get_sync_state(user_id, provider)
        if state is None:
            return web.json_response({"error": f"No sync state for {provider}"}, status=404)
        return web.json_response(state.to_dict())

    async def handle_context_search(self, request: web.Request) -> web.Response:
        if self._context_engine is None:
            return web.json_response({"error": "Context search is not configured"}, status=503)
        body = await _read_json(request)
        if body is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)
        try:
            search = ContextSearchRequest.model_validate(body)
        except ValidationError as e:
            return web.json_response({"error": f"Invalid search: {e}"}, status=400)

        context = await self._context_engine.fetch_additional_integration_data(
            search.user_id,
            search.query,
            provider=search.provider,
            item_types=search.item_types,
            since_days=search.since_days,
            limit=search.limit,
        )
        return web.json_response(context.to_payload())


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None
