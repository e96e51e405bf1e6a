"""FastAPI application exposing the sync and integration endpoints."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Config
from ..integration import IntegrationQueue
from ..models import UNSET, format_timestamp, utcnow
from ..sanitize import parse_timestamp
from ..store import EventStore, StoreError
from ..sync import SyncFailed, SyncRequestError, SyncService

logger = logging.getLogger(__name__)

TENANT_HEADER = "x-tenant-id"
REQUEST_ID_HEADER = "x-request-id"


def _error(status_code: int, code: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, **extra})


async def _json_body(request: Request) -> dict[str, Any]:
    """Decode a JSON object body; anything else is treated as empty."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_app(config: Config, store: EventStore) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Application configuration.
        store: Connected event store shared by every request.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="eventsync",
        description="Event synchronization and integration export service",
        version="0.1.0",
    )

    sync_service = SyncService(store)
    queue = IntegrationQueue(
        store,
        touch_updated_at=config.integration.touch_updated_at,
        max_page_size=config.integration.max_page_size,
    )

    # Store references for route handlers
    app.state.config = config
    app.state.store = store
    app.state.sync_service = sync_service
    app.state.queue = queue

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Attach a request id and resolve the tenant."""
        incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
        request.state.request_id = incoming or str(uuid.uuid4())

        tenant = request.headers.get(TENANT_HEADER, "").strip()
        if not tenant and request.url.path != "/health":
            if config.server.require_tenant:
                response = _error(400, "tenant_required", message="Tenant ID missing.")
                response.headers[REQUEST_ID_HEADER] = request.state.request_id
                return response
            tenant = config.server.default_tenant
        request.state.tenant_id = tenant

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    # ==================== Health ====================

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        return {
            "status": "ok",
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
            "components": {"store": store.is_connected},
        }

    # ==================== Sync ====================

    @app.post("/sync/events")
    async def sync_events(request: Request):
        """Push a batch of events and pull the caller's delta."""
        body = await _json_body(request)
        tenant_id = request.state.tenant_id

        try:
            result = sync_service.sync(
                tenant_id, since=body.get("since"), events=body.get("events")
            )
        except SyncRequestError as e:
            return _error(400, e.code)
        except SyncFailed:
            logger.exception(
                f"[{request.state.request_id}] failed to process events"
            )
            return _error(500, SyncFailed.code)

        return result.to_dict()

    # ==================== Integration ====================

    @app.get("/integration/events")
    async def integration_events(
        request: Request,
        page: str | None = None,
        pageSize: str | None = None,
    ):
        """List events that have not been exported yet."""
        try:
            result = queue.page(
                request.state.tenant_id,
                page=page,
                page_size=pageSize,
                default_page_size=config.integration.default_page_size,
            )
        except StoreError:
            logger.exception(f"[{request.state.request_id}] failed to list events")
            return _error(500, "integration_list_failed")

        return result.to_dict()

    @app.post("/integration/events/mark")
    async def integration_mark(request: Request):
        """Mark events as exported (or clear the marker with null)."""
        body = await _json_body(request)

        raw_ids = body.get("ids")
        ids = []
        if isinstance(raw_ids, list):
            ids = [v.strip() for v in raw_ids if isinstance(v, str) and v.strip()]
        if not ids:
            return _error(400, "invalid_ids")

        raw_date = body.get("integrationDate", UNSET)
        if raw_date is UNSET:
            integration_date = utcnow()
        elif raw_date is None:
            integration_date = None
        else:
            integration_date = parse_timestamp(raw_date) if isinstance(raw_date, str) else None
            if integration_date is None:
                return _error(400, "invalid_integration_date")

        try:
            updated = queue.mark_consumed(
                request.state.tenant_id, ids, integration_date
            )
        except StoreError:
            logger.exception(f"[{request.state.request_id}] failed to mark events")
            return _error(500, "integration_mark_failed")

        return {
            "updated": updated,
            "integrationDate": (
                format_timestamp(integration_date) if integration_date else None
            ),
        }

    # ==================== Stats ====================

    @app.get("/api/stats")
    async def api_stats(request: Request):
        """Get store statistics for the caller's tenant."""
        try:
            stats = store.get_stats(request.state.tenant_id)
        except StoreError as e:
            return _error(500, "stats_failed", details=str(e))

        stats["touch_updated_at_on_mark"] = config.integration.touch_updated_at
        stats["timestamp"] = format_timestamp(datetime.now(timezone.utc))
        return stats

    return app
