"""
Dashboard API server.

Each request builds its own Lifecycle / HealthChecker / Destroyer over the
one shared context opened in the lifespan. Lifecycle transitions on the
same slug are not serialized against each other.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..config import PilotConfig
from ..connection import ServerConnection
from ..context import PilotContext, open_context
from ..exceptions import PilotError
from ..logging_config import correlation_scope, get_logger
from ..registry import Owner
from .auth import ensure_dashboard_token, require_token

logger = logging.getLogger("claw_pilot.dashboard")
request_log = get_logger("claw_pilot.dashboard.requests")

ERROR_STATUS: dict[str, int] = {
    "INSTANCE_NOT_FOUND": 404,
    "BLUEPRINT_NOT_FOUND": 404,
    "INSTANCE_EXISTS": 409,
    "PORT_CONFLICT": 409,
    "BLUEPRINT_EXISTS": 409,
    "AGENT_EXISTS": 409,
    "REGISTRY_CONFLICT": 409,
    "NOT_INITIALIZED": 409,
    "GATEWAY_UNHEALTHY": 503,
    "TOOL_NOT_FOUND": 503,
    "SERVICE_ACTION_FAILED": 502,
}


# ── Request models ───────────────────────────────────────────────────────────

class BlueprintCreate(BaseModel):
    name: str
    description: str | None = None
    icon: str | None = None
    tags: str | None = None
    color: str | None = None


class BlueprintUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    icon: str | None = None
    tags: str | None = None
    color: str | None = None


# ── Dependencies ─────────────────────────────────────────────────────────────

def get_ctx(request: Request) -> PilotContext:
    return request.app.state.ctx


def get_http(request: Request) -> httpx.AsyncClient | None:
    return request.app.state.http_client


# ── Instances ────────────────────────────────────────────────────────────────

instances = APIRouter(prefix="/api/instances", tags=["Instances"], dependencies=[Depends(require_token)])


@instances.get("")
async def list_instances(ctx: PilotContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    return [i.to_dict() for i in ctx.registry.list_instances()]


@instances.get("/{slug}")
async def get_instance(slug: str, ctx: PilotContext = Depends(get_ctx)) -> dict[str, Any]:
    return ctx.registry.require_instance(slug).to_dict()


@instances.get("/{slug}/agents")
async def list_agents(slug: str, ctx: PilotContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    return [a.to_dict() for a in ctx.registry.list_instance_agents(slug)]


@instances.get("/{slug}/events")
async def list_events(slug: str, limit: int = 50, ctx: PilotContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    ctx.registry.require_instance(slug)
    return [e.to_dict() for e in ctx.registry.list_events(slug, limit=min(max(limit, 1), 500))]


@instances.get("/{slug}/health")
async def instance_health(
    slug: str,
    ctx: PilotContext = Depends(get_ctx),
    http: httpx.AsyncClient | None = Depends(get_http),
) -> dict[str, Any]:
    status = await ctx.health(http).check(slug)
    return status.to_dict()


@instances.post("/{slug}/start")
async def start_instance(
    slug: str,
    ctx: PilotContext = Depends(get_ctx),
    http: httpx.AsyncClient | None = Depends(get_http),
) -> dict[str, Any]:
    await ctx.lifecycle(http).start(slug)
    return {"ok": True, "slug": slug, "state": "running"}


@instances.post("/{slug}/stop")
async def stop_instance(slug: str, ctx: PilotContext = Depends(get_ctx)) -> dict[str, Any]:
    await ctx.lifecycle().stop(slug)
    return {"ok": True, "slug": slug, "state": "stopped"}


@instances.post("/{slug}/restart")
async def restart_instance(
    slug: str,
    ctx: PilotContext = Depends(get_ctx),
    http: httpx.AsyncClient | None = Depends(get_http),
) -> dict[str, Any]:
    await ctx.lifecycle(http).restart(slug)
    return {"ok": True, "slug": slug, "state": "running"}


@instances.delete("/{slug}")
async def destroy_instance(slug: str, ctx: PilotContext = Depends(get_ctx)) -> dict[str, Any]:
    report = await ctx.destroyer().destroy(slug)
    return {"ok": True, "slug": slug, "warnings": report.warnings}


# ── Host ─────────────────────────────────────────────────────────────────────

host = APIRouter(prefix="/api", tags=["Host"])


@host.get("/health")
async def api_health(ctx: PilotContext = Depends(get_ctx)) -> dict[str, Any]:
    return {
        "status": "ok",
        "version": __version__,
        "instances": len(ctx.registry.list_instances()),
        "service_manager": ctx.service_manager.name,
    }


@host.get("/health/all", dependencies=[Depends(require_token)])
async def all_health(
    ctx: PilotContext = Depends(get_ctx),
    http: httpx.AsyncClient | None = Depends(get_http),
) -> list[dict[str, Any]]:
    return [s.to_dict() for s in await ctx.health(http).check_all()]


@host.get("/next-port", dependencies=[Depends(require_token)])
async def next_port(ctx: PilotContext = Depends(get_ctx)) -> dict[str, int]:
    server = ctx.require_server()
    return {"port": await ctx.port_allocator().find_free_port(server.id)}


# ── Blueprints ───────────────────────────────────────────────────────────────

blueprints = APIRouter(prefix="/api/blueprints", tags=["Blueprints"], dependencies=[Depends(require_token)])


def _blueprint_or_404(ctx: PilotContext, blueprint_id: int):
    bp = ctx.registry.get_blueprint(blueprint_id)
    if bp is None:
        raise PilotError(f"Blueprint {blueprint_id} not found", "BLUEPRINT_NOT_FOUND")
    return bp


@blueprints.get("")
async def list_blueprints(ctx: PilotContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    return ctx.registry.list_blueprints()


@blueprints.post("", status_code=201)
async def create_blueprint(body: BlueprintCreate, ctx: PilotContext = Depends(get_ctx)) -> dict[str, Any]:
    return ctx.registry.create_blueprint(**body.model_dump()).to_dict()


@blueprints.get("/{blueprint_id}")
async def get_blueprint(blueprint_id: int, ctx: PilotContext = Depends(get_ctx)) -> dict[str, Any]:
    bp = _blueprint_or_404(ctx, blueprint_id)
    owner = Owner.blueprint(bp.id)
    return {
        **bp.to_dict(),
        "agents": [a.to_dict() for a in ctx.registry.list_agents(owner)],
        "links": [link.to_dict() for link in ctx.registry.list_links(owner)],
    }


@blueprints.put("/{blueprint_id}")
async def update_blueprint(
    blueprint_id: int,
    body: BlueprintUpdate,
    ctx: PilotContext = Depends(get_ctx),
) -> dict[str, Any]:
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    bp = ctx.registry.update_blueprint(blueprint_id, **fields)
    if bp is None:
        raise PilotError(f"Blueprint {blueprint_id} not found", "BLUEPRINT_NOT_FOUND")
    return bp.to_dict()


@blueprints.delete("/{blueprint_id}")
async def delete_blueprint(blueprint_id: int, ctx: PilotContext = Depends(get_ctx)) -> dict[str, bool]:
    if not ctx.registry.delete_blueprint(blueprint_id):
        raise PilotError(f"Blueprint {blueprint_id} not found", "BLUEPRINT_NOT_FOUND")
    return {"ok": True}


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(
    config: PilotConfig | None = None,
    conn: ServerConnection | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the dashboard app. ``conn``/``http_client`` are injectable for tests."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with open_context(config, conn) as ctx:
            app.state.ctx = ctx
            app.state.token = await ensure_dashboard_token(ctx.conn, ctx.config)
            app.state.http_client = http_client
            logger.info("Dashboard ready (registry %s)", ctx.config.db_path)
            yield

    app = FastAPI(title="claw-pilot", version=__version__, lifespan=lifespan)

    @app.exception_handler(PilotError)
    async def pilot_error_handler(request: Request, exc: PilotError):
        status = ERROR_STATUS.get(exc.code, 500)
        if status >= 500:
            logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        with correlation_scope(request.headers.get("X-Correlation-ID")) as cid:
            structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)
            start = time.perf_counter()
            try:
                response = await call_next(request)
                request_log.info(
                    "request",
                    status=response.status_code,
                    duration_ms=round((time.perf_counter() - start) * 1000, 1),
                )
            finally:
                structlog.contextvars.unbind_contextvars("method", "path")
        response.headers["X-Correlation-ID"] = cid
        return response

    app.include_router(host)
    app.include_router(instances)
    app.include_router(blueprints)
    return app
