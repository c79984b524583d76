"""
Lifecycle — start / stop / restart with health verification.

    stopped --start--> running
    running --stop---> stopped
    running --restart-> running

``error`` is never written here; HealthChecker infers it. A start that
the service manager accepts but whose gateway never answers ``/health``
raises GatewayUnhealthyError and leaves the registry state untouched.
"""

import logging

import httpx

from .config import PilotConfig
from .connection import ExecResult
from .db.models import Instance
from .exceptions import GatewayUnhealthyError, PollTimeoutError, ServiceActionError
from .poll import poll_until_ready
from .probe import probe_gateway
from .registry import Registry
from .service_manager import ServiceManager

logger = logging.getLogger("claw_pilot.lifecycle")


class Lifecycle:
    """Service-manager transitions for one registry."""

    def __init__(
        self,
        registry: Registry,
        service_manager: ServiceManager,
        config: PilotConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.registry = registry
        self.service_manager = service_manager
        self.config = config
        self._http = http_client

    @staticmethod
    def _check(action: str, unit: str, result: ExecResult) -> None:
        if not result.ok:
            raise ServiceActionError(action, unit, result.stderr.strip())

    async def start(self, slug: str) -> Instance:
        instance = self.registry.require_instance(slug)
        result = await self.service_manager.start(slug)
        self._check("start", instance.service_unit, result)
        await self.wait_for_health(instance)
        self.registry.update_instance_state(slug, "running")
        self.registry.log_event(slug, "started")
        logger.info("Started %s on port %d", slug, instance.port)
        return instance

    async def stop(self, slug: str) -> Instance:
        instance = self.registry.require_instance(slug)
        result = await self.service_manager.stop(slug)
        if not result.ok:
            # Usually "not loaded": the service is already down.
            logger.warning("stop %s exited %d: %s", instance.service_unit, result.exit_code, result.stderr.strip())
        self.registry.update_instance_state(slug, "stopped")
        self.registry.log_event(slug, "stopped")
        logger.info("Stopped %s", slug)
        return instance

    async def restart(self, slug: str) -> Instance:
        instance = self.registry.require_instance(slug)
        result = await self.service_manager.restart(slug)
        self._check("restart", instance.service_unit, result)
        await self.wait_for_health(instance)
        self.registry.update_instance_state(slug, "running")
        self.registry.log_event(slug, "restarted")
        logger.info("Restarted %s", slug)
        return instance

    async def enable(self, slug: str) -> None:
        instance = self.registry.require_instance(slug)
        result = await self.service_manager.enable(slug)
        self._check("enable", instance.service_unit, result)

    async def daemon_reload(self) -> None:
        result = await self.service_manager.daemon_reload()
        self._check("daemon-reload", self.service_manager.name, result)

    async def wait_for_health(self, instance: Instance) -> None:
        """Poll ``/health`` until 2xx or ``gateway_ready_timeout``."""

        async def _probe() -> bool:
            return await probe_gateway(
                instance.port,
                timeout=self.config.poll_probe_timeout,
                client=self._http,
            )

        try:
            await poll_until_ready(
                _probe,
                timeout=self.config.gateway_ready_timeout,
                interval=self.config.poll_interval,
                label=f"gateway {instance.slug}:{instance.port}",
            )
        except PollTimeoutError as e:
            raise GatewayUnhealthyError(instance.slug, instance.port) from e
