"""
Instance discovery and reconciliation.

``scan`` merges three views of the host:

1. State directories ``<openclaw_home>/.openclaw-<slug>/openclaw.json`` plus
   the legacy single-instance ``<openclaw_home>/.openclaw`` (slug ``default``).
2. The service manager's unit list, which enriches directory finds and
   recovers instances whose state dir lives elsewhere.
3. The registry, diffed into new / unchanged / removed.

``init`` also asks for a /health probe per find; a live gateway makes an
adopted instance ``running`` whatever the service manager reports.

Unreadable, malformed or portless configs are skipped, never half-registered.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .config import PilotConfig
from .connection import ServerConnection
from .db.models import Instance
from .exceptions import InstanceAlreadyExistsError, PilotError
from .probe import probe_gateway
from .registry import NewAgent, Registry
from .service_manager import ServiceManager

logger = logging.getLogger("claw_pilot.discovery")

DEFAULT_AGENT_ID = "main"
LEGACY_SLUG = "default"


@dataclass
class DiscoveredAgent:
    id: str
    name: str
    model: str | None
    workspace_path: str
    is_default: bool = False


@dataclass
class DiscoveredInstance:
    slug: str
    state_dir: str
    config_path: str
    port: int
    agents: list[DiscoveredAgent] = field(default_factory=list)
    service_unit: str | None = None
    service_state: str | None = None
    telegram_bot: str | None = None
    default_model: str | None = None
    source: str = "directory"
    gateway_healthy: bool | None = None  # None: not probed

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "state_dir": self.state_dir,
            "config_path": self.config_path,
            "port": self.port,
            "agents": [a.__dict__.copy() for a in self.agents],
            "service_unit": self.service_unit,
            "service_state": self.service_state,
            "telegram_bot": self.telegram_bot,
            "default_model": self.default_model,
            "source": self.source,
            "gateway_healthy": self.gateway_healthy,
        }


@dataclass
class DiscoveryResult:
    instances: list[DiscoveredInstance]
    new_instances: list[DiscoveredInstance]
    unchanged_slugs: list[str]
    removed_slugs: list[str]


# ── Config parsing ───────────────────────────────────────────────────────────

def _model_str(value: Any) -> str | None:
    # model is either "provider/model" or {"primary": ..., "fallbacks": [...]}
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return None


def parse_instance_config(
    raw: str,
    slug: str,
    state_dir: str,
    config_path: str,
    source: str = "directory",
) -> DiscoveredInstance | None:
    """Build a DiscoveredInstance from openclaw.json text, or None to skip."""
    try:
        config = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug("Invalid JSON in %s: %s", config_path, e)
        return None
    if not isinstance(config, dict):
        logger.debug("Config %s is not a JSON object", config_path)
        return None

    gateway = config.get("gateway")
    port = gateway.get("port") if isinstance(gateway, dict) else None
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        logger.debug("Config %s has no usable gateway.port", config_path)
        return None

    agents_conf = config.get("agents") if isinstance(config.get("agents"), dict) else {}
    defaults = agents_conf.get("defaults") if isinstance(agents_conf.get("defaults"), dict) else {}
    agent_list = agents_conf.get("list") if isinstance(agents_conf.get("list"), list) else []
    default_model = _model_str(defaults.get("model"))
    workspaces = Path(state_dir) / "workspaces"

    agents = [DiscoveredAgent(
        id=DEFAULT_AGENT_ID,
        name=defaults.get("name") if isinstance(defaults.get("name"), str) else "Main",
        model=default_model,
        workspace_path=str(workspaces / DEFAULT_AGENT_ID),
        is_default=True,
    )]
    seen = {DEFAULT_AGENT_ID}
    for entry in agent_list:
        if not isinstance(entry, dict):
            continue
        agent_id = entry.get("id")
        if not isinstance(agent_id, str) or not agent_id or agent_id in seen:
            continue
        seen.add(agent_id)
        name = entry.get("name")
        workspace = entry.get("workspace")
        agents.append(DiscoveredAgent(
            id=agent_id,
            name=name if isinstance(name, str) and name else agent_id,
            model=_model_str(entry.get("model")) or default_model,
            workspace_path=str(workspaces / (workspace if isinstance(workspace, str) and workspace else agent_id)),
        ))

    telegram_bot = None
    channels = config.get("channels")
    telegram = channels.get("telegram") if isinstance(channels, dict) else None
    if isinstance(telegram, dict) and telegram.get("botUsername"):
        telegram_bot = f"@{telegram['botUsername']}"

    return DiscoveredInstance(
        slug=slug,
        state_dir=state_dir,
        config_path=config_path,
        port=port,
        agents=agents,
        telegram_bot=telegram_bot,
        default_model=default_model,
        source=source,
    )


def inferred_state(service_state: str | None, gateway_healthy: bool | None = None) -> str:
    if gateway_healthy or service_state == "active":
        return "running"
    if service_state == "inactive":
        return "stopped"
    if service_state == "failed":
        return "error"
    return "unknown"


# ── Discovery ────────────────────────────────────────────────────────────────

class InstanceDiscovery:
    """Scan disk + service manager and reconcile against the registry."""

    def __init__(
        self,
        conn: ServerConnection,
        registry: Registry,
        config: PilotConfig,
        service_manager: ServiceManager,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.conn = conn
        self.registry = registry
        self.config = config
        self.service_manager = service_manager
        self._http = http_client

    async def scan(self, probe_gateways: bool = False) -> DiscoveryResult:
        """Merge disk and service-manager finds, then diff against the registry.

        With ``probe_gateways`` each find also gets ``gateway_healthy`` from
        its /health endpoint.
        """
        found: dict[str, DiscoveredInstance] = {}
        await self._scan_directories(found)
        await self._scan_legacy(found)
        await self._scan_service_units(found)
        if probe_gateways:
            for instance in found.values():
                instance.gateway_healthy = await probe_gateway(
                    instance.port,
                    timeout=self.config.health_check_timeout,
                    client=self._http,
                )
        return self._reconcile(found)

    async def _load(self, slug: str, state_dir: str, source: str) -> DiscoveredInstance | None:
        config_path = str(Path(state_dir) / self.config.config_file_name)
        if not await self.conn.exists(config_path):
            return None
        try:
            raw = await self.conn.read_file(config_path)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Cannot read config at %s: %s", config_path, e)
            return None
        return parse_instance_config(raw, slug, state_dir, config_path, source)

    async def _scan_directories(self, found: dict[str, DiscoveredInstance]) -> None:
        prefix = self.config.state_dir_prefix
        try:
            entries = await self.conn.readdir(self.config.openclaw_home)
        except OSError as e:
            logger.debug("Cannot list %s: %s", self.config.openclaw_home, e)
            return
        for entry in entries:
            if not entry.startswith(prefix):
                continue
            slug = entry[len(prefix):]
            if not slug or slug in found:
                continue
            instance = await self._load(slug, str(self.config.openclaw_home / entry), "directory")
            if instance:
                found[slug] = instance

    async def _scan_legacy(self, found: dict[str, DiscoveredInstance]) -> None:
        if LEGACY_SLUG in found:
            return
        instance = await self._load(LEGACY_SLUG, str(self.config.legacy_dir), "legacy")
        if instance:
            found[LEGACY_SLUG] = instance

    async def _scan_service_units(self, found: dict[str, DiscoveredInstance]) -> None:
        try:
            units = await self.service_manager.list_units()
        except PilotError as e:
            logger.warning("Service manager scan skipped: %s", e)
            return

        for unit in units:
            existing = found.get(unit.slug)
            if existing is not None:
                existing.service_unit = unit.unit
                existing.service_state = unit.state
                continue

            state_dir = await self.service_manager.state_dir_of(unit.slug)
            if not state_dir:
                logger.debug("Unit %s has no OPENCLAW_STATE_DIR; skipping", unit.unit)
                continue
            instance = await self._load(unit.slug, state_dir, "service")
            if instance:
                instance.service_unit = unit.unit
                instance.service_state = unit.state
                found[unit.slug] = instance

    def _reconcile(self, found: dict[str, DiscoveredInstance]) -> DiscoveryResult:
        registered = {i.slug for i in self.registry.list_instances()}
        new_instances = [inst for slug, inst in found.items() if slug not in registered]
        unchanged = [slug for slug in found if slug in registered]
        removed = sorted(slug for slug in registered if slug not in found)
        return DiscoveryResult(
            instances=list(found.values()),
            new_instances=new_instances,
            unchanged_slugs=unchanged,
            removed_slugs=removed,
        )

    def adopt(self, instance: DiscoveredInstance, server_id: int) -> Instance:
        """Register a ``new_instances`` entry: row, agents, port, event, atomically.

        Raises:
            InstanceAlreadyExistsError: the slug is already registered.
        """
        if self.registry.get_instance(instance.slug) is not None:
            raise InstanceAlreadyExistsError(instance.slug)

        record = self.registry.register_instance(
            server_id=server_id,
            slug=instance.slug,
            port=instance.port,
            config_path=instance.config_path,
            state_dir=instance.state_dir,
            service_unit=instance.service_unit or self.service_manager.unit_name(instance.slug),
            display_name=instance.slug,
            telegram_bot=instance.telegram_bot,
            default_model=instance.default_model,
            discovered=True,
            state=inferred_state(instance.service_state, instance.gateway_healthy),
            agents=[
                NewAgent(
                    agent_id=a.id,
                    name=a.name,
                    model=a.model,
                    workspace_path=a.workspace_path,
                    is_default=a.is_default,
                )
                for a in instance.agents
            ],
            event_type="discovered",
            event_detail=(
                f"Adopted from existing infra (source: {instance.source}, "
                f"{len(instance.agents)} agents, port {instance.port})"
            ),
        )
        logger.info("Adopted %s on port %d (%d agents)", instance.slug, instance.port, len(instance.agents))
        return record
