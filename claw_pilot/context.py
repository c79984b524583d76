"""
Explicit per-invocation context: config, registry, connection, service
manager and the resolved XDG runtime dir.

Every CLI command and the dashboard open one context and build
components from it; nothing reads process-wide state at call time.

Usage:
    async with open_context() as ctx:
        await ctx.lifecycle().start("demo1")
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from sqlalchemy import Engine

from .config import PilotConfig
from .connection import LocalConnection, ServerConnection
from .db.models import Server
from .db.schema import init_database
from .db.session import create_registry_engine
from .destroyer import Destroyer
from .discovery import InstanceDiscovery
from .exceptions import PilotError
from .health import HealthChecker
from .lifecycle import Lifecycle
from .port_allocator import PortAllocator
from .registry import Registry
from .runtime import resolve_xdg_runtime_dir
from .service_manager import ServiceManager, detect_service_manager

logger = logging.getLogger("claw_pilot.context")


@dataclass
class PilotContext:
    config: PilotConfig
    engine: Engine
    registry: Registry
    conn: ServerConnection
    service_manager: ServiceManager
    xdg_runtime_dir: str

    def require_server(self) -> Server:
        server = self.registry.get_local_server()
        if server is None:
            raise PilotError("Registry not initialized. Run: claw-pilot init", "NOT_INITIALIZED")
        return server

    # ── Component factories ──────────────────────────────────────────────

    def lifecycle(self, http_client: httpx.AsyncClient | None = None) -> Lifecycle:
        return Lifecycle(self.registry, self.service_manager, self.config, http_client)

    def health(self, http_client: httpx.AsyncClient | None = None) -> HealthChecker:
        return HealthChecker(self.conn, self.registry, self.service_manager, self.config, http_client)

    def destroyer(self) -> Destroyer:
        return Destroyer(self.conn, self.registry, self.service_manager, self.config)

    def discovery(self, http_client: httpx.AsyncClient | None = None) -> InstanceDiscovery:
        return InstanceDiscovery(self.conn, self.registry, self.config, self.service_manager, http_client)

    def port_allocator(self) -> PortAllocator:
        return PortAllocator(self.registry)


@asynccontextmanager
async def open_context(
    config: PilotConfig | None = None,
    conn: ServerConnection | None = None,
) -> AsyncIterator[PilotContext]:
    """Open the registry (creating/migrating it) and resolve host facts once."""
    config = config or PilotConfig()
    conn = conn or LocalConnection(default_timeout=config.exec_timeout)

    await conn.mkdir(config.data_dir, mode=config.dir_mode)
    engine = create_registry_engine(config.db_path)
    try:
        init_database(engine, seed=config.registry_seed())
        xdg_runtime_dir = await resolve_xdg_runtime_dir(conn, config.fallback_uid)
        service_manager = detect_service_manager(conn, config, xdg_runtime_dir)
        logger.debug("Context ready: %s, XDG_RUNTIME_DIR=%s", service_manager.name, xdg_runtime_dir)
        yield PilotContext(
            config=config,
            engine=engine,
            registry=Registry(engine),
            conn=conn,
            service_manager=service_manager,
            xdg_runtime_dir=xdg_runtime_dir,
        )
    finally:
        engine.dispose()
