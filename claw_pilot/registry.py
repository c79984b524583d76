"""
Registry — durable store for servers, instances, agents, ports and events.

Every public method runs in its own short transaction. ``register_instance``
and ``remove_instance`` bundle the multi-row changes used by discovery-adopt
and teardown so they land all-or-nothing.

Returned ORM objects are detached (``expire_on_commit=False``) and safe to
read after the call returns.
"""

import hashlib
import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db.models import (
    INSTANCE_STATES,
    LINK_TYPES,
    Agent,
    AgentFile,
    AgentLink,
    Blueprint,
    ConfigEntry,
    Event,
    Instance,
    Port,
    Server,
    utcnow_iso,
)
from .db.session import make_session_factory
from .exceptions import (
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    PilotError,
    PortConflictError,
)

logger = logging.getLogger("claw_pilot.registry")


# ── Owner (Instance XOR Blueprint) ───────────────────────────────────────────

class OwnerKind(str, Enum):
    INSTANCE = "instance"
    BLUEPRINT = "blueprint"


@dataclass(frozen=True)
class Owner:
    """Owner of agents and links: exactly one instance or one blueprint."""

    kind: OwnerKind
    id: int

    @classmethod
    def instance(cls, instance_id: int) -> "Owner":
        return cls(OwnerKind.INSTANCE, instance_id)

    @classmethod
    def blueprint(cls, blueprint_id: int) -> "Owner":
        return cls(OwnerKind.BLUEPRINT, blueprint_id)

    @classmethod
    def of(cls, instance_id: int | None = None, blueprint_id: int | None = None) -> "Owner":
        if (instance_id is None) == (blueprint_id is None):
            raise ValueError("Owner needs exactly one of instance_id or blueprint_id")
        if instance_id is not None:
            return cls.instance(instance_id)
        return cls.blueprint(blueprint_id)

    @classmethod
    def from_row(cls, row: Agent | AgentLink) -> "Owner":
        return cls.of(instance_id=row.instance_id, blueprint_id=row.blueprint_id)

    def columns(self) -> dict[str, int | None]:
        if self.kind is OwnerKind.INSTANCE:
            return {"instance_id": self.id, "blueprint_id": None}
        return {"instance_id": None, "blueprint_id": self.id}

    def where(self, model: type[Agent] | type[AgentLink]):
        if self.kind is OwnerKind.INSTANCE:
            return model.instance_id == self.id
        return model.blueprint_id == self.id


@dataclass
class NewAgent:
    """Agent fields supplied by provisioning or discovery."""
    agent_id: str
    name: str
    workspace_path: str
    model: str | None = None
    is_default: bool = False


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Registry:
    """Typed access to the registry database."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = make_session_factory(engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._sessions.begin() as session:
            yield session

    # ── Server ───────────────────────────────────────────────────────────

    def get_local_server(self) -> Server | None:
        with self.transaction() as s:
            return s.scalars(select(Server).order_by(Server.id).limit(1)).first()

    def upsert_local_server(
        self,
        hostname: str,
        openclaw_home: str,
        ip: str | None = None,
        openclaw_bin: str | None = None,
        openclaw_version: str | None = None,
        os: str | None = None,
    ) -> Server:
        """The single host row: created on first init, updated in place after."""
        with self.transaction() as s:
            server = s.scalars(select(Server).order_by(Server.id).limit(1)).first()
            if server is None:
                server = Server(hostname=hostname, openclaw_home=openclaw_home)
                s.add(server)
            server.hostname = hostname
            server.openclaw_home = openclaw_home
            server.ip = ip
            server.openclaw_bin = openclaw_bin
            server.openclaw_version = openclaw_version
            server.os = os
            server.updated_at = utcnow_iso()
            s.flush()
            return server

    def update_server_bin(self, openclaw_bin: str, openclaw_version: str | None) -> None:
        with self.transaction() as s:
            s.execute(
                update(Server).values(
                    openclaw_bin=openclaw_bin,
                    openclaw_version=openclaw_version,
                    updated_at=utcnow_iso(),
                )
            )

    # ── Instances ────────────────────────────────────────────────────────

    def list_instances(self) -> list[Instance]:
        with self.transaction() as s:
            return list(s.scalars(select(Instance).order_by(Instance.slug)))

    def get_instance(self, slug: str) -> Instance | None:
        with self.transaction() as s:
            return s.scalars(select(Instance).where(Instance.slug == slug)).first()

    def require_instance(self, slug: str) -> Instance:
        instance = self.get_instance(slug)
        if instance is None:
            raise InstanceNotFoundError(slug)
        return instance

    def get_instance_by_port(self, port: int) -> Instance | None:
        with self.transaction() as s:
            return s.scalars(select(Instance).where(Instance.port == port)).first()

    def _insert_instance(self, s: Session, server_id: int, slug: str, port: int, **fields: Any) -> Instance:
        if s.scalars(select(Instance.id).where(Instance.slug == slug)).first() is not None:
            raise InstanceAlreadyExistsError(slug)
        if s.scalars(select(Instance.id).where(Instance.port == port)).first() is not None:
            raise PortConflictError(port)
        state = fields.get("state", "unknown")
        if state not in INSTANCE_STATES:
            raise ValueError(f"Invalid instance state: {state}")
        instance = Instance(server_id=server_id, slug=slug, port=port, **fields)
        s.add(instance)
        s.flush()
        return instance

    def create_instance(
        self,
        server_id: int,
        slug: str,
        port: int,
        config_path: str,
        state_dir: str,
        service_unit: str,
        display_name: str | None = None,
        telegram_bot: str | None = None,
        default_model: str | None = None,
        discovered: bool = False,
        state: str = "unknown",
    ) -> Instance:
        try:
            with self.transaction() as s:
                return self._insert_instance(
                    s, server_id, slug, port,
                    config_path=config_path,
                    state_dir=state_dir,
                    service_unit=service_unit,
                    display_name=display_name,
                    telegram_bot=telegram_bot,
                    default_model=default_model,
                    discovered=discovered,
                    state=state,
                )
        except IntegrityError as e:
            # Lost a race with another writer between the checks and the insert.
            raise InstanceAlreadyExistsError(slug) from e

    def update_instance_state(self, slug: str, state: str) -> None:
        if state not in INSTANCE_STATES:
            raise ValueError(f"Invalid instance state: {state}")
        with self.transaction() as s:
            result = s.execute(
                update(Instance)
                .where(Instance.slug == slug)
                .values(state=state, updated_at=utcnow_iso())
            )
            if result.rowcount == 0:
                raise InstanceNotFoundError(slug)

    _UPDATABLE_INSTANCE_FIELDS = frozenset({
        "display_name", "telegram_bot", "default_model", "config_path", "state_dir", "service_unit",
    })

    def update_instance(self, slug: str, **fields: Any) -> Instance:
        unknown = set(fields) - self._UPDATABLE_INSTANCE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update instance fields: {sorted(unknown)}")
        with self.transaction() as s:
            instance = s.scalars(select(Instance).where(Instance.slug == slug)).first()
            if instance is None:
                raise InstanceNotFoundError(slug)
            for key, value in fields.items():
                setattr(instance, key, value)
            instance.updated_at = utcnow_iso()
            s.flush()
            return instance

    def delete_instance(self, slug: str) -> None:
        """Delete the row (agents, files and links cascade) and its port rows."""
        with self.transaction() as s:
            self._delete_instance(s, slug)

    def _delete_instance(self, s: Session, slug: str) -> Instance:
        instance = s.scalars(select(Instance).where(Instance.slug == slug)).first()
        if instance is None:
            raise InstanceNotFoundError(slug)
        s.execute(delete(Port).where(Port.instance_slug == slug))
        s.execute(delete(Agent).where(Agent.instance_id == instance.id))
        s.execute(delete(Instance).where(Instance.id == instance.id))
        return instance

    # ── Atomic composites ────────────────────────────────────────────────

    def register_instance(
        self,
        server_id: int,
        slug: str,
        port: int,
        config_path: str,
        state_dir: str,
        service_unit: str,
        agents: Iterable[NewAgent] = (),
        state: str = "unknown",
        discovered: bool = False,
        telegram_bot: str | None = None,
        default_model: str | None = None,
        display_name: str | None = None,
        event_type: str = "discovered",
        event_detail: str | None = None,
    ) -> Instance:
        """Instance row + agents + port ledger + event, all or nothing."""
        try:
            with self.transaction() as s:
                instance = self._insert_instance(
                    s, server_id, slug, port,
                    config_path=config_path,
                    state_dir=state_dir,
                    service_unit=service_unit,
                    display_name=display_name,
                    telegram_bot=telegram_bot,
                    default_model=default_model,
                    discovered=discovered,
                    state=state,
                )
                owner = Owner.instance(instance.id)
                for agent in agents:
                    s.add(Agent(
                        **owner.columns(),
                        agent_id=agent.agent_id,
                        name=agent.name,
                        model=agent.model,
                        workspace_path=agent.workspace_path,
                        is_default=agent.is_default,
                    ))
                self._allocate_port(s, server_id, port, slug)
                s.add(Event(instance_slug=slug, event_type=event_type, detail=event_detail))
                s.flush()
                return instance
        except IntegrityError as e:
            raise PilotError(f'Failed to register "{slug}": {e.orig}', "REGISTRY_CONFLICT") from e

    def remove_instance(self, slug: str, event_type: str = "destroyed", event_detail: str | None = None) -> None:
        """Release the port, delete agents and the instance, log the event; one transaction."""
        with self.transaction() as s:
            instance = self._delete_instance(s, slug)
            s.execute(
                delete(Port).where(Port.server_id == instance.server_id, Port.port == instance.port)
            )
            s.add(Event(instance_slug=slug, event_type=event_type, detail=event_detail))

    # ── Agents ───────────────────────────────────────────────────────────

    def list_agents(self, owner: Owner) -> list[Agent]:
        with self.transaction() as s:
            return list(s.scalars(
                select(Agent).where(owner.where(Agent)).order_by(Agent.is_default.desc(), Agent.agent_id)
            ))

    def list_instance_agents(self, slug: str) -> list[Agent]:
        return self.list_agents(Owner.instance(self.require_instance(slug).id))

    def get_agent(self, owner: Owner, agent_id: str) -> Agent | None:
        with self.transaction() as s:
            return s.scalars(
                select(Agent).where(owner.where(Agent), Agent.agent_id == agent_id)
            ).first()

    def create_agent(
        self,
        owner: Owner,
        agent_id: str,
        name: str,
        workspace_path: str,
        model: str | None = None,
        is_default: bool = False,
        role: str | None = None,
        tags: str | None = None,
        notes: str | None = None,
    ) -> Agent:
        try:
            with self.transaction() as s:
                agent = Agent(
                    **owner.columns(),
                    agent_id=agent_id,
                    name=name,
                    workspace_path=workspace_path,
                    model=model,
                    is_default=is_default,
                    role=role,
                    tags=tags,
                    notes=notes,
                )
                s.add(agent)
                s.flush()
                return agent
        except IntegrityError as e:
            raise PilotError(f'Agent "{agent_id}" already exists for {owner.kind.value} {owner.id}', "AGENT_EXISTS") from e

    def upsert_agent(self, owner: Owner, agent: NewAgent) -> Agent:
        """Insert or refresh the config-derived fields; metadata columns survive."""
        with self.transaction() as s:
            row = s.scalars(
                select(Agent).where(owner.where(Agent), Agent.agent_id == agent.agent_id)
            ).first()
            if row is None:
                row = Agent(**owner.columns(), agent_id=agent.agent_id)
                s.add(row)
            row.name = agent.name
            row.model = agent.model
            row.workspace_path = agent.workspace_path
            row.is_default = agent.is_default
            s.flush()
            return row

    def update_agent_meta(self, agent_pk: int, **fields: str | None) -> None:
        allowed = {"role", "tags", "notes", "name", "model"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update agent fields: {sorted(unknown)}")
        if not fields:
            return
        with self.transaction() as s:
            s.execute(update(Agent).where(Agent.id == agent_pk).values(**fields))

    def update_agent_position(self, agent_pk: int, x: float, y: float) -> None:
        with self.transaction() as s:
            s.execute(update(Agent).where(Agent.id == agent_pk).values(position_x=x, position_y=y))

    def update_agent_sync(self, agent_pk: int, config_hash: str, synced_at: str | None = None) -> None:
        with self.transaction() as s:
            s.execute(
                update(Agent)
                .where(Agent.id == agent_pk)
                .values(config_hash=config_hash, synced_at=synced_at or utcnow_iso())
            )

    def delete_agent(self, agent_pk: int) -> None:
        with self.transaction() as s:
            s.execute(delete(Agent).where(Agent.id == agent_pk))

    def delete_agents(self, owner: Owner) -> int:
        with self.transaction() as s:
            return s.execute(delete(Agent).where(owner.where(Agent))).rowcount

    # ── Agent files ──────────────────────────────────────────────────────

    def list_agent_files(self, agent_pk: int) -> list[AgentFile]:
        with self.transaction() as s:
            return list(s.scalars(
                select(AgentFile).where(AgentFile.agent_id == agent_pk).order_by(AgentFile.filename)
            ))

    def get_agent_file(self, agent_pk: int, filename: str) -> AgentFile | None:
        with self.transaction() as s:
            return s.scalars(
                select(AgentFile).where(AgentFile.agent_id == agent_pk, AgentFile.filename == filename)
            ).first()

    def upsert_agent_file(self, agent_pk: int, filename: str, content: str) -> AgentFile:
        with self.transaction() as s:
            row = s.scalars(
                select(AgentFile).where(AgentFile.agent_id == agent_pk, AgentFile.filename == filename)
            ).first()
            if row is None:
                row = AgentFile(agent_id=agent_pk, filename=filename)
                s.add(row)
            row.content = content
            row.content_hash = content_hash(content)
            row.updated_at = utcnow_iso()
            s.flush()
            return row

    def delete_agent_file(self, agent_pk: int, filename: str) -> None:
        with self.transaction() as s:
            s.execute(
                delete(AgentFile).where(AgentFile.agent_id == agent_pk, AgentFile.filename == filename)
            )

    # ── Agent links ──────────────────────────────────────────────────────

    def list_links(self, owner: Owner) -> list[AgentLink]:
        with self.transaction() as s:
            return list(s.scalars(
                select(AgentLink).where(owner.where(AgentLink)).order_by(AgentLink.id)
            ))

    def replace_links(self, owner: Owner, links: Iterable[tuple[str, str, str]]) -> list[AgentLink]:
        """Swap the owner's link set for ``(source, target, link_type)`` triples."""
        unique: list[tuple[str, str, str]] = []
        for link in links:
            if link[2] not in LINK_TYPES:
                raise ValueError(f"Invalid link type: {link[2]}")
            if link not in unique:
                unique.append(link)
        with self.transaction() as s:
            s.execute(delete(AgentLink).where(owner.where(AgentLink)))
            rows = [
                AgentLink(**owner.columns(), source_agent_id=src, target_agent_id=tgt, link_type=kind)
                for src, tgt, kind in unique
            ]
            s.add_all(rows)
            s.flush()
            return rows

    # ── Blueprints ───────────────────────────────────────────────────────

    def list_blueprints(self) -> list[dict[str, Any]]:
        """Blueprint dicts with an ``agent_count`` column, by name."""
        with self.transaction() as s:
            rows = s.execute(
                select(Blueprint, func.count(Agent.id))
                .outerjoin(Agent, Agent.blueprint_id == Blueprint.id)
                .group_by(Blueprint.id)
                .order_by(Blueprint.name)
            ).all()
            return [{**bp.to_dict(), "agent_count": count} for bp, count in rows]

    def get_blueprint(self, blueprint_id: int) -> Blueprint | None:
        with self.transaction() as s:
            return s.get(Blueprint, blueprint_id)

    def create_blueprint(
        self,
        name: str,
        description: str | None = None,
        icon: str | None = None,
        tags: str | None = None,
        color: str | None = None,
    ) -> Blueprint:
        try:
            with self.transaction() as s:
                bp = Blueprint(name=name, description=description, icon=icon, tags=tags, color=color)
                s.add(bp)
                s.flush()
                return bp
        except IntegrityError as e:
            raise PilotError(f'Blueprint "{name}" already exists', "BLUEPRINT_EXISTS") from e

    def update_blueprint(self, blueprint_id: int, **fields: str | None) -> Blueprint | None:
        allowed = {"name", "description", "icon", "tags", "color"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update blueprint fields: {sorted(unknown)}")
        try:
            with self.transaction() as s:
                bp = s.get(Blueprint, blueprint_id)
                if bp is None:
                    return None
                for key, value in fields.items():
                    setattr(bp, key, value)
                bp.updated_at = utcnow_iso()
                s.flush()
                return bp
        except IntegrityError as e:
            raise PilotError(f'Blueprint "{fields.get("name")}" already exists', "BLUEPRINT_EXISTS") from e

    def delete_blueprint(self, blueprint_id: int) -> bool:
        """Agents and links owned by the blueprint cascade."""
        with self.transaction() as s:
            return s.execute(delete(Blueprint).where(Blueprint.id == blueprint_id)).rowcount > 0

    # ── Ports ────────────────────────────────────────────────────────────

    def _allocate_port(self, s: Session, server_id: int, port: int, slug: str) -> None:
        existing = s.get(Port, (server_id, port))
        if existing is None:
            s.add(Port(server_id=server_id, port=port, instance_slug=slug))
        elif existing.instance_slug != slug:
            raise PortConflictError(port)

    def allocate_port(self, server_id: int, port: int, slug: str) -> None:
        """Ledger-only claim. Does not check that the OS port is free."""
        with self.transaction() as s:
            self._allocate_port(s, server_id, port, slug)

    def release_port(self, server_id: int, port: int) -> None:
        with self.transaction() as s:
            s.execute(delete(Port).where(Port.server_id == server_id, Port.port == port))

    def get_used_ports(self, server_id: int) -> list[int]:
        with self.transaction() as s:
            return list(s.scalars(
                select(Port.port).where(Port.server_id == server_id).order_by(Port.port)
            ))

    # ── Config ───────────────────────────────────────────────────────────

    def get_config(self, key: str) -> str | None:
        with self.transaction() as s:
            entry = s.get(ConfigEntry, key)
            return entry.value if entry else None

    def get_config_int(self, key: str, default: int) -> int:
        raw = self.get_config(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("config %s=%r is not an integer, using %d", key, raw, default)
            return default

    def set_config(self, key: str, value: str) -> None:
        with self.transaction() as s:
            s.merge(ConfigEntry(key=key, value=value))

    def all_config(self) -> dict[str, str]:
        with self.transaction() as s:
            return {e.key: e.value for e in s.scalars(select(ConfigEntry).order_by(ConfigEntry.key))}

    # ── Events ───────────────────────────────────────────────────────────

    def log_event(self, slug: str | None, event_type: str, detail: str | None = None) -> None:
        with self.transaction() as s:
            s.add(Event(instance_slug=slug, event_type=event_type, detail=detail))

    def list_events(self, slug: str | None = None, limit: int = 50) -> list[Event]:
        """Newest first."""
        stmt = select(Event).order_by(Event.id.desc()).limit(limit)
        if slug:
            stmt = stmt.where(Event.instance_slug == slug)
        with self.transaction() as s:
            return list(s.scalars(stmt))
