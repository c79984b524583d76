"""
Destroyer — ordered, best-effort teardown of one instance.

    stop -> disable -> remove unit file -> reload -> remove state dir
         -> remove reverse-proxy files -> registry (port, agents, row, event)

External steps log a warning on failure and the sequence continues; an
already-stopped service or a missing file is the common case. The
registry is touched last, in one transaction, so a crash mid-way leaves
a record pointing at the half-removed instance instead of an orphan.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import PilotConfig
from .connection import ExecResult, ServerConnection
from .exceptions import PilotError
from .registry import Registry
from .service_manager import ServiceManager

logger = logging.getLogger("claw_pilot.destroyer")


@dataclass
class TeardownReport:
    slug: str
    completed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


class Destroyer:
    def __init__(
        self,
        conn: ServerConnection,
        registry: Registry,
        service_manager: ServiceManager,
        config: PilotConfig,
    ):
        self.conn = conn
        self.registry = registry
        self.service_manager = service_manager
        self.config = config

    def proxy_artifacts(self, slug: str) -> list[Path]:
        names = (f"openclaw-{slug}", f"openclaw-{slug}.conf")
        return [site_dir / name for site_dir in self.config.proxy_site_dirs for name in names]

    async def destroy(self, slug: str) -> TeardownReport:
        """Tear down ``slug``.

        Raises:
            InstanceNotFoundError: before any side effect.
        """
        instance = self.registry.require_instance(slug)
        report = TeardownReport(slug=slug)

        async def step(name: str, action: Callable[[], Awaitable[ExecResult | None]]) -> None:
            try:
                result = await action()
            except (PilotError, OSError) as e:
                report.warnings.append(f"{name}: {e}")
                logger.warning("destroy %s: %s failed: %s", slug, name, e)
                return
            if isinstance(result, ExecResult) and not result.ok:
                detail = result.stderr.strip() or f"exit {result.exit_code}"
                report.warnings.append(f"{name}: {detail}")
                logger.warning("destroy %s: %s failed: %s", slug, name, detail)
                return
            report.completed.append(name)

        await step("stop", lambda: self.service_manager.stop(slug))
        await step("disable", lambda: self.service_manager.disable(slug))
        await step("remove unit", lambda: self.conn.remove(self.service_manager.unit_path(slug)))
        await step("daemon-reload", self.service_manager.daemon_reload)
        await step("remove state dir", lambda: self.conn.remove(instance.state_dir, recursive=True))

        for artifact in self.proxy_artifacts(slug):
            if await self.conn.exists(artifact):
                await step(f"remove {artifact}", lambda p=artifact: self.conn.remove(p))

        self.registry.remove_instance(slug, event_type="destroyed")
        logger.info("Destroyed %s (port %d released)", slug, instance.port)
        return report
