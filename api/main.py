"""
FastAPI Application — operations API for the notification pipeline.

Provides:
- Enqueue (single and bulk) per tenant
- Queue status, peek and per-message status
- Administration: pause, resume, clear, cancel, retry
- Rate-limit and duplicate-record maintenance
- Health and business-hours summary
- Periodic rule sweep and housekeeping, standing in for an external scheduler
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from api.components import build_components
from backend.connector import EntityStore
from config.settings import Settings, get_settings
from job_queue import DeliveryPipeline
from models.schemas import BusinessHoursWindow, QueueTier

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    message: dict[str, Any]
    behavior: Optional[dict[str, Any]] = None


class BulkEnqueueRequest(BaseModel):
    messages: list[dict[str, Any]]
    behavior: Optional[dict[str, Any]] = None
    batch_size: Optional[int] = None


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, entities: Optional[EntityStore] = None,
               run_periodic: bool = True) -> FastAPI:
    settings = settings or get_settings()
    components = build_components(settings, entities)
    pipeline: DeliveryPipeline = components["pipeline"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await components["store"].connect()
        if run_periodic:
            for task in components["tasks"]:
                await task.start_background()

        logger.info("notifypace_started",
                    store_backend=components["store"].name,
                    channel=components["adapter"].name,
                    timezone=settings.time.timezone)
        yield

        for task in components["tasks"]:
            await task.stop()
        await pipeline.shutdown()
        await components["adapter"].shutdown()
        await components["entities"].close()
        await components["store"].close()
        logger.info("notifypace_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Human-paced multi-tenant WhatsApp notification pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **await pipeline.health(),
        }

    @app.get("/api/v1/business-hours")
    async def business_hours(tenant_id: Optional[str] = None):
        now = pipeline.time_config.now_local(datetime.now(timezone.utc).timestamp())
        return pipeline.time_config.summary(now, tenant_id)

    @app.put("/api/v1/tenants/{tenant_id}/business-hours")
    async def set_business_hours(tenant_id: str, window: BusinessHoursWindow):
        pipeline.time_config.set_tenant_window(tenant_id, window)
        return {"tenant_id": tenant_id, "window": window.model_dump()}

    @app.delete("/api/v1/tenants/{tenant_id}/business-hours")
    async def clear_business_hours(tenant_id: str):
        pipeline.time_config.set_tenant_window(tenant_id, None)
        return {"tenant_id": tenant_id, "window": None}

    # ══════════════════════════════════════════════════════════
    #  ENQUEUE
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/tenants/{tenant_id}/messages")
    async def enqueue(tenant_id: str, req: EnqueueRequest):
        result = await pipeline.enqueue(tenant_id, req.message, req.behavior)
        return result.model_dump()

    @app.post("/api/v1/tenants/{tenant_id}/messages/bulk")
    async def enqueue_bulk(tenant_id: str, req: BulkEnqueueRequest):
        result = await pipeline.enqueue_bulk(tenant_id, req.messages, req.behavior, req.batch_size)
        return {"success": result.success, **result.model_dump()}

    # ══════════════════════════════════════════════════════════
    #  QUEUE STATUS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/tenants/{tenant_id}/queue")
    async def queue_status(tenant_id: str):
        status = await pipeline.status(tenant_id)
        return {"total_length": status.total_length, **status.model_dump()}

    @app.get("/api/v1/tenants/{tenant_id}/queue/messages")
    async def list_messages(
        tenant_id: str,
        tier: QueueTier = QueueTier.REGULAR,
        limit: int = Query(50, le=200),
    ):
        return [e.model_dump(mode="json") for e in await pipeline.list_messages(tenant_id, tier, limit)]

    @app.get("/api/v1/messages/{message_id}")
    async def message_status(message_id: str):
        record = await pipeline.message_status(message_id)
        if not record:
            raise HTTPException(404, "Message not found")
        return record.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  ADMINISTRATION
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/tenants/{tenant_id}/pause")
    async def pause(tenant_id: str):
        await pipeline.pause(tenant_id)
        return {"status": "paused"}

    @app.post("/api/v1/tenants/{tenant_id}/resume")
    async def resume(tenant_id: str):
        await pipeline.resume(tenant_id)
        return {"status": "resumed"}

    @app.post("/api/v1/tenants/{tenant_id}/clear")
    async def clear(tenant_id: str):
        return {"status": "cleared", "removed": await pipeline.clear(tenant_id)}

    @app.post("/api/v1/tenants/{tenant_id}/messages/{message_id}/cancel")
    async def cancel(tenant_id: str, message_id: str):
        if not await pipeline.cancel(tenant_id, message_id):
            raise HTTPException(409, "Message is not cancellable")
        return {"status": "cancelled", "message_id": message_id}

    @app.post("/api/v1/tenants/{tenant_id}/messages/{message_id}/retry")
    async def retry(tenant_id: str, message_id: str):
        result = await pipeline.retry(tenant_id, message_id)
        if not result.accepted:
            raise HTTPException(409, result.detail or result.reason)
        return result.model_dump()

    @app.get("/api/v1/tenants/{tenant_id}/rate-limits")
    async def rate_limits(tenant_id: str):
        return await pipeline.governor.stats(tenant_id)

    @app.delete("/api/v1/tenants/{tenant_id}/rate-limits")
    async def reset_rate_limits(tenant_id: str):
        return {"removed": await pipeline.governor.reset(tenant_id)}

    @app.delete("/api/v1/tenants/{tenant_id}/duplicates")
    async def clear_duplicates(tenant_id: str):
        return {"removed": await pipeline.duplicates.clear_tenant(tenant_id)}

    # ══════════════════════════════════════════════════════════
    #  AUTOMATION
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/rules/sweep")
    async def run_sweep():
        report = await components["evaluator"].sweep()
        return report.model_dump(mode="json")

    @app.post("/api/v1/housekeeping")
    async def run_housekeeping():
        return await pipeline.housekeeping()

    return app


app = create_app()
