"""
FastAPI Application: inbound messages, follow-up ticks and administration.

Provides:
- Inbound entry point for channel adapters (emit / emit last message)
- On-demand follow-up tick, scoped to one tenant or all of them
- Tenant, bot and funnel administration with cache invalidation
- Session funnel rebinding and bulk status changes
- Background follow-up scheduler in the lifespan
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cache.dedup import InboundKeyStore
from cache.dependency_cache import create_cache
from channels.base import ChannelRegistry, LoggingChannelSink
from channels.webhook_sink import WebhookChannelSink
from config.settings import get_settings
from core.admin import AdminService
from core.errors import InvalidRequestError, NotFoundError
from core.orchestrator import SessionOrchestrator
from core.scheduler import FunnelFollowUpScheduler
from database.store_factory import create_store
from models.schemas import BotBinding, BotKind, Funnel, FunnelStatus, InboundMessage, Tenant
from providers import create_default_registry

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
store = create_store({"store_backend": _settings_boot.database.store_backend})
cache = create_cache(_settings_boot.cache)
providers = create_default_registry(_settings_boot)
channel_registry = ChannelRegistry(default=WebhookChannelSink())

orchestrator = SessionOrchestrator(
    store=store,
    cache=cache,
    providers=providers,
    sink=channel_registry,
    dedup=InboundKeyStore(
        ttl_seconds=_settings_boot.session.inbound_key_ttl_seconds,
        refresh_seconds=_settings_boot.session.inbound_key_refresh_seconds,
        max_size=_settings_boot.session.inbound_key_max_size,
    ),
    settings=_settings_boot,
)
scheduler = FunnelFollowUpScheduler(store, cache, providers, channel_registry, settings=_settings_boot)
admin = AdminService(store, cache, history_limit=_settings_boot.session.history_limit)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        from database.session import init_db
        await init_db(settings.database.url)
    await cache.connect()

    if settings.scheduler.enabled:
        await scheduler.start()

    logger.info("botrelay_started",
                store=type(store).__name__,
                providers=[k.value for k in providers.get_available()])
    yield

    await scheduler.stop()
    await providers.close_all()
    await channel_registry.shutdown_all()
    await cache.close()
    if settings.database.store_backend == "sql":
        from database.session import close_db
        await close_db()
    logger.info("botrelay_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="BotRelay API",
    description="Chatbot session orchestration and funnel follow-ups",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class TenantRequest(BaseModel):
    id: Optional[str] = None
    name: str
    token: str = ""
    outbound_url: str = ""
    keep_open: bool = False
    ignore_contacts: list[str] = []


class EmitRequest(BaseModel):
    remote_contact: str
    push_name: Optional[str] = None
    key_id: str = ""
    from_me: bool = False
    timestamp: Optional[int] = None
    message_type: str = "conversation"
    content: str = ""
    raw: dict[str, Any] = {}
    quoted_message: Optional[dict[str, Any]] = None


class EmitLastRequest(BaseModel):
    remote_contact: str


class BotRequest(BaseModel):
    kind: BotKind
    enabled: bool = True
    description: str = ""
    webhook_url: str = ""
    prompt: Optional[str] = None
    funnel_id: Optional[str] = None
    basic_auth_user: str = ""
    basic_auth_pass: str = ""
    bearer_token: str = ""
    agent_id: str = ""
    agent_config: Optional[dict[str, Any]] = None
    agno_port: Optional[int] = None
    debounce_seconds: Optional[float] = None


class BotUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    description: Optional[str] = None
    webhook_url: Optional[str] = None
    prompt: Optional[str] = None
    funnel_id: Optional[str] = None
    basic_auth_user: Optional[str] = None
    basic_auth_pass: Optional[str] = None
    bearer_token: Optional[str] = None
    agent_id: Optional[str] = None
    agent_config: Optional[dict[str, Any]] = None
    agno_port: Optional[int] = None
    debounce_seconds: Optional[float] = None


class StatusRequest(BaseModel):
    status: str
    remote_contact: Optional[str] = None


class FunnelRequest(BaseModel):
    name: str
    goal: Optional[str] = None
    logic: Optional[str] = None
    follow_up_enable: bool = True
    status: FunnelStatus = FunnelStatus.ACTIVE
    stages: Any = []


class FunnelUpdateRequest(BaseModel):
    name: Optional[str] = None
    goal: Optional[str] = None
    logic: Optional[str] = None
    follow_up_enable: Optional[bool] = None
    status: Optional[FunnelStatus] = None
    stages: Any = None


class SessionFunnelRequest(BaseModel):
    remote_contact: str
    funnel_id: Optional[str] = None
    funnel_stage: Optional[int] = None
    follow_up_stage: Optional[int] = None
    funnel_enable: Optional[bool] = None
    follow_up_enable: Optional[bool] = None
    reset_stages: bool = False


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "providers": [k.value for k in providers.get_available()],
        "cache": "redis" if cache.uses_redis else "local",
    }


# ══════════════════════════════════════════════════════════════
#  TENANTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/tenants")
async def upsert_tenant(req: TenantRequest):
    data = req.model_dump(exclude_none=True)
    tenant = await store.upsert_tenant(Tenant(**data))
    if tenant.outbound_url:
        channel_registry.unregister(tenant.id)
    else:
        channel_registry.register(tenant.id, LoggingChannelSink())
    return tenant.model_dump(mode="json")


@app.get("/api/v1/tenants/{tenant_id}")
async def get_tenant(tenant_id: str):
    tenant = await admin.get_tenant(tenant_id)
    return tenant.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/tenants/{tenant_id}/messages")
async def emit_message(tenant_id: str, req: EmitRequest):
    tenant = await admin.get_tenant(tenant_id)
    message = InboundMessage(**req.model_dump())
    return await orchestrator.emit(tenant, req.remote_contact, message, req.push_name)


@app.post("/api/v1/tenants/{tenant_id}/messages/last")
async def emit_last_message(tenant_id: str, req: EmitLastRequest):
    tenant = await admin.get_tenant(tenant_id)
    return await orchestrator.emit_last_message(tenant, req.remote_contact)


# ══════════════════════════════════════════════════════════════
#  FOLLOW-UPS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/followups/tick")
async def trigger_tick(tenant_id: Optional[str] = Query(None)):
    if tenant_id:
        await admin.get_tenant(tenant_id)
    return await scheduler.tick(tenant_id)


# ══════════════════════════════════════════════════════════════
#  BOTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/tenants/{tenant_id}/bots")
async def create_bot(tenant_id: str, req: BotRequest):
    bot = await admin.create_bot(BotBinding(tenant_id=tenant_id, **req.model_dump()))
    return bot.model_dump(mode="json")


@app.get("/api/v1/tenants/{tenant_id}/bots")
async def list_bots(tenant_id: str, kind: Optional[BotKind] = Query(None)):
    return [b.model_dump(mode="json") for b in await store.list_bots(tenant_id, kind=kind)]


@app.patch("/api/v1/tenants/{tenant_id}/bots/{bot_id}")
async def update_bot(tenant_id: str, bot_id: str, req: BotUpdateRequest):
    bot = await admin.update_bot(tenant_id, bot_id, req.model_dump(exclude_unset=True))
    return bot.model_dump(mode="json")


@app.delete("/api/v1/tenants/{tenant_id}/bots/{bot_id}")
async def delete_bot(tenant_id: str, bot_id: str):
    return await admin.delete_bot(tenant_id, bot_id)


@app.post("/api/v1/tenants/{tenant_id}/bots/{bot_id}/status")
async def change_status(tenant_id: str, bot_id: str, req: StatusRequest):
    return await admin.change_status(tenant_id, bot_id, req.status, req.remote_contact)


# ══════════════════════════════════════════════════════════════
#  FUNNELS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/tenants/{tenant_id}/funnels")
async def create_funnel(tenant_id: str, req: FunnelRequest):
    funnel = await admin.create_funnel(Funnel(tenant_id=tenant_id, **req.model_dump()))
    return funnel.model_dump(mode="json")


@app.get("/api/v1/tenants/{tenant_id}/funnels")
async def list_funnels(tenant_id: str):
    return [f.model_dump(mode="json") for f in await admin.list_funnels(tenant_id)]


@app.get("/api/v1/tenants/{tenant_id}/funnels/{funnel_id}")
async def get_funnel(tenant_id: str, funnel_id: str):
    funnel = await admin.get_funnel(tenant_id, funnel_id)
    return funnel.model_dump(mode="json")


@app.patch("/api/v1/tenants/{tenant_id}/funnels/{funnel_id}")
async def update_funnel(tenant_id: str, funnel_id: str, req: FunnelUpdateRequest):
    funnel = await admin.update_funnel(tenant_id, funnel_id, req.model_dump(exclude_unset=True))
    return funnel.model_dump(mode="json")


@app.delete("/api/v1/tenants/{tenant_id}/funnels/{funnel_id}")
async def delete_funnel(tenant_id: str, funnel_id: str):
    return await admin.delete_funnel(tenant_id, funnel_id)


# ══════════════════════════════════════════════════════════════
#  SESSIONS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/tenants/{tenant_id}/sessions")
async def list_sessions(tenant_id: str, bot_id: Optional[str] = Query(None)):
    return [s.model_dump(mode="json") for s in await store.list_sessions(tenant_id, bot_id)]


@app.patch("/api/v1/tenants/{tenant_id}/sessions/funnel")
async def update_session_funnel(tenant_id: str, req: SessionFunnelRequest):
    await admin.get_tenant(tenant_id)
    changes = req.model_dump(exclude_unset=True, exclude={"remote_contact"})
    session = await admin.update_session_funnel(tenant_id, req.remote_contact, changes)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session.model_dump(mode="json")


@app.get("/api/v1/sessions/{session_id}/messages")
async def session_messages(session_id: str):
    if await store.get_session(session_id) is None:
        raise HTTPException(404, "Session not found")
    return await orchestrator.history(session_id)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
