"""
Registry schema and forward-only migration framework.

A fresh database gets the base schema (version 1) plus seeded config;
every migration with a higher version than the stored one is then
applied in order, one transaction each. The stored version moves only
when a migration commits.

Shadow-table swaps (create ``<table>_vN``, copy, drop, rename) declare
``foreign_keys_off=True``. SQLite ignores ``PRAGMA foreign_keys`` inside
a transaction, so the pragma is flipped on the raw connection around the
transaction and ``PRAGMA foreign_key_check`` must come back empty before
commit.

Usage:
    engine = create_registry_engine(path)
    init_database(engine)
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from sqlalchemy import Connection, Engine, text
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import MigrationError

logger = logging.getLogger("claw_pilot.db.schema")

BASE_SCHEMA_VERSION = 1

DEFAULT_CONFIG: dict[str, str] = {
    "port_range_start": "18789",
    "port_range_end": "18799",
    "dashboard_port": "19000",
    "health_check_interval_ms": "10000",
    "openclaw_user": "openclaw",
}


# ── Base schema (v1) ─────────────────────────────────────────────────────────

BASE_SCHEMA: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
      version INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS servers (
      id               INTEGER PRIMARY KEY AUTOINCREMENT,
      hostname         TEXT NOT NULL,
      ip               TEXT,
      ssh_user         TEXT,
      ssh_port         INTEGER DEFAULT 22,
      openclaw_home    TEXT NOT NULL,
      openclaw_bin     TEXT,
      openclaw_version TEXT,
      os               TEXT,
      created_at       TEXT,
      updated_at       TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS instances (
      id              INTEGER PRIMARY KEY AUTOINCREMENT,
      server_id       INTEGER NOT NULL REFERENCES servers(id),
      slug            TEXT NOT NULL UNIQUE,
      display_name    TEXT,
      port            INTEGER NOT NULL UNIQUE,
      state           TEXT DEFAULT 'unknown' CHECK(state IN ('running','stopped','error','unknown')),
      config_path     TEXT NOT NULL,
      state_dir       TEXT NOT NULL,
      systemd_unit    TEXT NOT NULL,
      telegram_bot    TEXT,
      nginx_domain    TEXT,
      default_model   TEXT,
      discovered      INTEGER DEFAULT 0,
      created_at      TEXT,
      updated_at      TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agents (
      id              INTEGER PRIMARY KEY AUTOINCREMENT,
      instance_id     INTEGER NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
      agent_id        TEXT NOT NULL,
      name            TEXT NOT NULL,
      model           TEXT,
      workspace_path  TEXT NOT NULL,
      is_default      INTEGER DEFAULT 0,
      UNIQUE(instance_id, agent_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ports (
      server_id       INTEGER NOT NULL REFERENCES servers(id),
      port            INTEGER NOT NULL,
      instance_slug   TEXT,
      PRIMARY KEY (server_id, port)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS config (
      key             TEXT PRIMARY KEY,
      value           TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
      id              INTEGER PRIMARY KEY AUTOINCREMENT,
      instance_slug   TEXT,
      event_type      TEXT NOT NULL,
      detail          TEXT,
      created_at      TEXT
    )
    """,
]


# ── Migrations ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    upgrade: Callable[[Connection], None]
    foreign_keys_off: bool = False


def _run(conn: Connection, statements: Sequence[str]) -> None:
    for stmt in statements:
        conn.exec_driver_sql(stmt)


def _v2_agent_files_and_links(conn: Connection) -> None:
    _run(conn, [
        """
        CREATE TABLE IF NOT EXISTS agent_files (
          id              INTEGER PRIMARY KEY AUTOINCREMENT,
          agent_id        INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
          filename        TEXT NOT NULL,
          content         TEXT,
          content_hash    TEXT,
          updated_at      TEXT,
          UNIQUE(agent_id, filename)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS agent_links (
          id              INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id     INTEGER NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
          source_agent_id TEXT NOT NULL,
          target_agent_id TEXT NOT NULL,
          link_type       TEXT NOT NULL CHECK(link_type IN ('peer', 'spawn')),
          UNIQUE(instance_id, source_agent_id, target_agent_id, link_type)
        )
        """,
        "ALTER TABLE agents ADD COLUMN role TEXT",
        "ALTER TABLE agents ADD COLUMN tags TEXT",
        "ALTER TABLE agents ADD COLUMN notes TEXT",
        "ALTER TABLE agents ADD COLUMN position_x REAL",
        "ALTER TABLE agents ADD COLUMN position_y REAL",
        "ALTER TABLE agents ADD COLUMN config_hash TEXT",
        "ALTER TABLE agents ADD COLUMN synced_at TEXT",
    ])


_EXACTLY_ONE_OWNER = """
      CHECK (
        (instance_id IS NOT NULL AND blueprint_id IS NULL) OR
        (instance_id IS NULL AND blueprint_id IS NOT NULL)
      )"""


def _v3_blueprints_and_polymorphic_owner(conn: Connection) -> None:
    _run(conn, [
        """
        CREATE TABLE IF NOT EXISTS blueprints (
          id           INTEGER PRIMARY KEY AUTOINCREMENT,
          name         TEXT NOT NULL UNIQUE,
          description  TEXT,
          icon         TEXT,
          tags         TEXT,
          color        TEXT,
          created_at   TEXT,
          updated_at   TEXT
        )
        """,
        f"""
        CREATE TABLE agents_v3 (
          id              INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id     INTEGER REFERENCES instances(id) ON DELETE CASCADE,
          blueprint_id    INTEGER REFERENCES blueprints(id) ON DELETE CASCADE,
          agent_id        TEXT NOT NULL,
          name            TEXT NOT NULL,
          model           TEXT,
          workspace_path  TEXT NOT NULL,
          is_default      INTEGER DEFAULT 0,
          role            TEXT,
          tags            TEXT,
          notes           TEXT,
          position_x      REAL,
          position_y      REAL,
          config_hash     TEXT,
          synced_at       TEXT,{_EXACTLY_ONE_OWNER},
          UNIQUE(instance_id, agent_id),
          UNIQUE(blueprint_id, agent_id)
        )
        """,
        """
        INSERT INTO agents_v3
          SELECT id, instance_id, NULL, agent_id, name, model, workspace_path,
                 is_default, role, tags, notes, position_x, position_y,
                 config_hash, synced_at
          FROM agents
        """,
        "DROP TABLE agents",
        "ALTER TABLE agents_v3 RENAME TO agents",
        f"""
        CREATE TABLE agent_links_v3 (
          id              INTEGER PRIMARY KEY AUTOINCREMENT,
          instance_id     INTEGER REFERENCES instances(id) ON DELETE CASCADE,
          blueprint_id    INTEGER REFERENCES blueprints(id) ON DELETE CASCADE,
          source_agent_id TEXT NOT NULL,
          target_agent_id TEXT NOT NULL,
          link_type       TEXT NOT NULL CHECK(link_type IN ('peer', 'spawn')),{_EXACTLY_ONE_OWNER},
          UNIQUE(instance_id, source_agent_id, target_agent_id, link_type),
          UNIQUE(blueprint_id, source_agent_id, target_agent_id, link_type)
        )
        """,
        """
        INSERT INTO agent_links_v3
          SELECT id, instance_id, NULL, source_agent_id, target_agent_id, link_type
          FROM agent_links
        """,
        "DROP TABLE agent_links",
        "ALTER TABLE agent_links_v3 RENAME TO agent_links",
    ])


def _v4_instances_service_unit(conn: Connection) -> None:
    _run(conn, [
        """
        CREATE TABLE instances_v4 (
          id              INTEGER PRIMARY KEY AUTOINCREMENT,
          server_id       INTEGER NOT NULL REFERENCES servers(id),
          slug            TEXT NOT NULL UNIQUE,
          display_name    TEXT,
          port            INTEGER NOT NULL UNIQUE,
          state           TEXT DEFAULT 'unknown' CHECK(state IN ('running','stopped','error','unknown')),
          config_path     TEXT NOT NULL,
          state_dir       TEXT NOT NULL,
          service_unit    TEXT NOT NULL,
          telegram_bot    TEXT,
          default_model   TEXT,
          discovered      INTEGER DEFAULT 0,
          created_at      TEXT,
          updated_at      TEXT
        )
        """,
        """
        INSERT INTO instances_v4
          SELECT id, server_id, slug, display_name, port, state,
                 config_path, state_dir, systemd_unit, telegram_bot,
                 default_model, discovered, created_at, updated_at
          FROM instances
        """,
        "DROP TABLE instances",
        "ALTER TABLE instances_v4 RENAME TO instances",
    ])


MIGRATIONS: list[Migration] = [
    Migration(2, "agent files, agent links, agent metadata", _v2_agent_files_and_links),
    # Dropping agents with enforcement on would cascade into agent_files.
    Migration(3, "blueprints, polymorphic agent owner", _v3_blueprints_and_polymorphic_owner, foreign_keys_off=True),
    Migration(4, "instances: drop nginx_domain, systemd_unit -> service_unit", _v4_instances_service_unit, foreign_keys_off=True),
]


def validate_migrations(migrations: Sequence[Migration]) -> None:
    """Versions must be strictly increasing and above the base schema."""
    previous = BASE_SCHEMA_VERSION
    for migration in migrations:
        if migration.version <= previous:
            raise MigrationError(
                f"Migration v{migration.version} out of order "
                f"(must be greater than v{previous})"
            )
        previous = migration.version


# ── init_database ────────────────────────────────────────────────────────────

def schema_exists(conn: Connection) -> bool:
    row = conn.execute(text(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
    )).first()
    return row is not None


def current_version(conn: Connection) -> int:
    row = conn.execute(text("SELECT version FROM schema_version")).first()
    return row[0] if row else BASE_SCHEMA_VERSION


def _create_base_schema(conn: Connection, seed: Mapping[str, str]) -> None:
    with conn.begin():
        _run(conn, BASE_SCHEMA)
        conn.execute(
            text("INSERT INTO schema_version (version) VALUES (:v)"),
            {"v": BASE_SCHEMA_VERSION},
        )
        for key, value in seed.items():
            conn.execute(
                text("INSERT OR IGNORE INTO config (key, value) VALUES (:k, :v)"),
                {"k": key, "v": value},
            )
    logger.info("Created registry base schema v%d", BASE_SCHEMA_VERSION)


def _set_foreign_keys(conn: Connection, enabled: bool) -> None:
    # Outside any transaction: the driver runs in autocommit mode.
    conn.connection.driver_connection.execute(
        f"PRAGMA foreign_keys={'ON' if enabled else 'OFF'}"
    )


def _apply(conn: Connection, migration: Migration) -> None:
    if migration.foreign_keys_off:
        _set_foreign_keys(conn, False)
    try:
        with conn.begin():
            migration.upgrade(conn)
            if migration.foreign_keys_off:
                violations = conn.exec_driver_sql("PRAGMA foreign_key_check").fetchall()
                if violations:
                    raise MigrationError(
                        f"Migration v{migration.version} left {len(violations)} "
                        f"foreign key violation(s)"
                    )
            conn.execute(
                text("UPDATE schema_version SET version = :v"),
                {"v": migration.version},
            )
    except SQLAlchemyError as e:
        raise MigrationError(f"Migration v{migration.version} failed: {e}") from e
    finally:
        if migration.foreign_keys_off:
            _set_foreign_keys(conn, True)


def init_database(
    engine: Engine,
    migrations: Sequence[Migration] = MIGRATIONS,
    seed: Mapping[str, str] | None = None,
) -> int:
    """Create or upgrade the registry schema. Returns the resulting version.

    ``seed`` overrides DEFAULT_CONFIG entries, and only when the registry
    is created; an existing config table is never rewritten.

    Raises:
        MigrationError: a migration failed (its transaction is rolled back
            and the stored version stays at the last good migration).
    """
    validate_migrations(migrations)
    with engine.connect() as conn:
        if not schema_exists(conn):
            conn.rollback()
            _create_base_schema(conn, {**DEFAULT_CONFIG, **(seed or {})})

        version = current_version(conn)
        conn.rollback()
        for migration in migrations:
            if migration.version <= version:
                continue
            logger.info("Applying registry migration v%d: %s", migration.version, migration.description)
            _apply(conn, migration)
            version = migration.version
    return version
