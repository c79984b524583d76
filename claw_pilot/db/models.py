"""
SQLAlchemy 2.0 ORM models for the claw-pilot registry.

Mirrors the schema produced by ``schema.init_database`` at the latest
migration. DDL is owned by the migration framework; these models never
call ``create_all``.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean, CheckConstraint, Float, ForeignKey, Integer, Text, UniqueConstraint,
)
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ── Base ─────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared base for all registry models."""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict keyed by DB column name."""
        result: dict[str, Any] = {}
        mapper = sa_inspect(type(self))
        for attr in mapper.column_attrs:
            result[attr.columns[0].name] = getattr(self, attr.key)
        return result

    def __repr__(self) -> str:
        pk = ", ".join(
            f"{col.key}={getattr(self, col.key)!r}"
            for col in sa_inspect(type(self)).primary_key
        )
        return f"<{type(self).__name__} {pk}>"


# ── Host ─────────────────────────────────────────────────────────────────────

class Server(Base):
    __tablename__ = "servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hostname: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(Text)
    ssh_user: Mapped[str | None] = mapped_column(Text)
    ssh_port: Mapped[int | None] = mapped_column(Integer, default=22)
    openclaw_home: Mapped[str] = mapped_column(Text, nullable=False)
    openclaw_bin: Mapped[str | None] = mapped_column(Text)
    openclaw_version: Mapped[str | None] = mapped_column(Text)
    os: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso)
    updated_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso, onupdate=utcnow_iso)


# ── Instances ────────────────────────────────────────────────────────────────

INSTANCE_STATES = ("running", "stopped", "error", "unknown")


class Instance(Base):
    __tablename__ = "instances"
    __table_args__ = (
        CheckConstraint(
            "state IN ('running','stopped','error','unknown')",
            name="instances_state_check",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(ForeignKey("servers.id"), nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text)
    port: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    state: Mapped[str] = mapped_column(Text, default="unknown")
    config_path: Mapped[str] = mapped_column(Text, nullable=False)
    state_dir: Mapped[str] = mapped_column(Text, nullable=False)
    service_unit: Mapped[str] = mapped_column(Text, nullable=False)
    telegram_bot: Mapped[str | None] = mapped_column(Text)
    default_model: Mapped[str | None] = mapped_column(Text)
    discovered: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso)
    updated_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso, onupdate=utcnow_iso)


class Blueprint(Base):
    __tablename__ = "blueprints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    icon: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso)
    updated_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso, onupdate=utcnow_iso)


# ── Agents ───────────────────────────────────────────────────────────────────

_EXACTLY_ONE_OWNER = (
    "(instance_id IS NOT NULL AND blueprint_id IS NULL) OR "
    "(instance_id IS NULL AND blueprint_id IS NOT NULL)"
)


class Agent(Base):
    __tablename__ = "agents"
    __table_args__ = (
        CheckConstraint(_EXACTLY_ONE_OWNER, name="agents_owner_check"),
        UniqueConstraint("instance_id", "agent_id"),
        UniqueConstraint("blueprint_id", "agent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int | None] = mapped_column(ForeignKey("instances.id", ondelete="CASCADE"))
    blueprint_id: Mapped[int | None] = mapped_column(ForeignKey("blueprints.id", ondelete="CASCADE"))
    agent_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str | None] = mapped_column(Text)
    workspace_path: Mapped[str] = mapped_column(Text, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    role: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    position_x: Mapped[float | None] = mapped_column(Float)
    position_y: Mapped[float | None] = mapped_column(Float)
    config_hash: Mapped[str | None] = mapped_column(Text)
    synced_at: Mapped[str | None] = mapped_column(Text)


class AgentFile(Base):
    __tablename__ = "agent_files"
    __table_args__ = (UniqueConstraint("agent_id", "filename"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[int] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str | None] = mapped_column(Text)
    content_hash: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso, onupdate=utcnow_iso)


LINK_TYPES = ("peer", "spawn")


class AgentLink(Base):
    __tablename__ = "agent_links"
    __table_args__ = (
        CheckConstraint(_EXACTLY_ONE_OWNER, name="agent_links_owner_check"),
        CheckConstraint("link_type IN ('peer', 'spawn')", name="agent_links_type_check"),
        UniqueConstraint("instance_id", "source_agent_id", "target_agent_id", "link_type"),
        UniqueConstraint("blueprint_id", "source_agent_id", "target_agent_id", "link_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int | None] = mapped_column(ForeignKey("instances.id", ondelete="CASCADE"))
    blueprint_id: Mapped[int | None] = mapped_column(ForeignKey("blueprints.id", ondelete="CASCADE"))
    source_agent_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_agent_id: Mapped[str] = mapped_column(Text, nullable=False)
    link_type: Mapped[str] = mapped_column(Text, nullable=False)


# ── Ledger, config, audit ────────────────────────────────────────────────────

class Port(Base):
    __tablename__ = "ports"

    server_id: Mapped[int] = mapped_column(ForeignKey("servers.id"), primary_key=True)
    port: Mapped[int] = mapped_column(Integer, primary_key=True)
    instance_slug: Mapped[str | None] = mapped_column(Text)


class ConfigEntry(Base):
    __tablename__ = "config"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class Event(Base):
    """Append-only audit row. Never updated or deleted."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_slug: Mapped[str | None] = mapped_column(Text)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    detail: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[str | None] = mapped_column(Text, default=utcnow_iso)
