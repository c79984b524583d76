"""Registry storage: SQLite engine, schema + migrations, ORM models."""

from .models import (
    Agent,
    AgentFile,
    AgentLink,
    Base,
    Blueprint,
    ConfigEntry,
    Event,
    Instance,
    Port,
    Server,
)
from .schema import BASE_SCHEMA_VERSION, DEFAULT_CONFIG, MIGRATIONS, init_database
from .session import create_registry_engine

__all__ = [
    "Agent",
    "AgentFile",
    "AgentLink",
    "Base",
    "Blueprint",
    "ConfigEntry",
    "Event",
    "Instance",
    "Port",
    "Server",
    "BASE_SCHEMA_VERSION",
    "DEFAULT_CONFIG",
    "MIGRATIONS",
    "init_database",
    "create_registry_engine",
]
