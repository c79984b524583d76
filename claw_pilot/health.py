"""
Health aggregation for registered instances.

Three independent signals per instance: the gateway ``/health`` probe,
the service manager's state, and an optional Telegram channel probe.
Only the gateway probe decides ``healthy``; an OS-"active" service with
a silent gateway stays unhealthy.
"""

import json
import logging
import shlex
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

import httpx

from .config import PilotConfig
from .connection import ServerConnection
from .db.models import Instance
from .probe import probe_gateway
from .registry import Owner, Registry
from .service_manager import ServiceManager

logger = logging.getLogger("claw_pilot.health")

TELEGRAM_OK_MARKER = "Telegram: ok"
LOG_TAIL_LINES = 200


@dataclass
class HealthStatus:
    slug: str
    port: int
    gateway: str = "unknown"        # healthy | unhealthy | unknown
    service: str = "unknown"        # active | inactive | failed | unknown
    pid: int | None = None
    since: str | None = None
    agent_count: int | None = None
    telegram: str | None = None     # connected | disconnected | not_configured
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.gateway == "healthy"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["healthy"] = self.healthy
        return data


def inferred_state(status: HealthStatus) -> str:
    if status.gateway == "healthy":
        return "running"
    if status.service == "inactive":
        return "stopped"
    if status.service == "failed":
        return "error"
    return "unknown"


class HealthChecker:
    """Builds HealthStatus objects and writes the inferred state back."""

    def __init__(
        self,
        conn: ServerConnection,
        registry: Registry,
        service_manager: ServiceManager,
        config: PilotConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.conn = conn
        self.registry = registry
        self.service_manager = service_manager
        self.config = config
        self._http = http_client

    async def check(self, slug: str) -> HealthStatus:
        instance = self.registry.require_instance(slug)
        status = HealthStatus(slug=slug, port=instance.port)

        status.service = await self.service_manager.is_active(slug)

        healthy = await probe_gateway(
            instance.port,
            timeout=self.config.health_check_timeout,
            client=self._http,
        )
        status.gateway = "healthy" if healthy else "unhealthy"

        if status.service == "active":
            info = await self.service_manager.process_info(slug)
            status.pid = info.pid
            status.since = info.since

        status.agent_count = len(self.registry.list_agents(Owner.instance(instance.id)))
        status.telegram = await self._telegram_status(instance)

        self.registry.update_instance_state(slug, inferred_state(status))
        return status

    async def check_all(self) -> list[HealthStatus]:
        """Sequential, in registry order. One failure never aborts the batch."""
        statuses: list[HealthStatus] = []
        for instance in self.registry.list_instances():
            try:
                statuses.append(await self.check(instance.slug))
            except Exception as e:
                logger.warning("Health check for %s failed: %s", instance.slug, e)
                statuses.append(HealthStatus(
                    slug=instance.slug,
                    port=instance.port,
                    error=str(e),
                ))
        return statuses

    # ── Channel probe ────────────────────────────────────────────────────

    async def _telegram_configured(self, instance: Instance) -> bool:
        if instance.telegram_bot:
            return True
        try:
            config = json.loads(await self.conn.read_file(instance.config_path))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return False
        channels = config.get("channels") if isinstance(config, dict) else None
        telegram = channels.get("telegram") if isinstance(channels, dict) else None
        return isinstance(telegram, dict) and telegram.get("enabled") is True

    async def _telegram_status(self, instance: Instance) -> str:
        if not await self._telegram_configured(instance):
            return "not_configured"
        log_path = self.config.gateway_log_path(date.today())
        # tail | grep has no argument-list equivalent; the path is quoted.
        script = (
            f"tail -{LOG_TAIL_LINES} {shlex.quote(str(log_path))} 2>/dev/null"
            f" | grep -c {shlex.quote(TELEGRAM_OK_MARKER)} || true"
        )
        result = await self.conn.exec_shell(script)
        first = result.stdout.strip().splitlines()[:1]
        try:
            count = int(first[0]) if first else 0
        except ValueError:
            count = 0
        return "connected" if count > 0 else "disconnected"
