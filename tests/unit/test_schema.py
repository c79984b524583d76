"""Tests for the registry schema and forward-only migrations."""
import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError

from claw_pilot.db.models import Base
from claw_pilot.db.schema import (
    BASE_SCHEMA,
    BASE_SCHEMA_VERSION,
    DEFAULT_CONFIG,
    MIGRATIONS,
    Migration,
    init_database,
    validate_migrations,
)
from claw_pilot.db.session import create_registry_engine
from claw_pilot.exceptions import MigrationError
from claw_pilot.registry import Registry


@pytest.fixture
def raw_engine(tmp_path):
    """Unmigrated engine on an empty file."""
    eng = create_registry_engine(tmp_path / "registry.db")
    yield eng
    eng.dispose()


def _columns(engine, table: str) -> set[str]:
    return {c["name"] for c in inspect(engine).get_columns(table)}


def _version(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(text("SELECT version FROM schema_version")).scalar_one()


def _fk_enabled(engine) -> int:
    with engine.connect() as conn:
        return conn.exec_driver_sql("PRAGMA foreign_keys").scalar_one()


def _seed_v1(engine) -> None:
    """Build a version-1 registry holding one instance and one agent."""
    with engine.begin() as conn:
        for stmt in BASE_SCHEMA:
            conn.exec_driver_sql(stmt)
        conn.execute(text("INSERT INTO schema_version (version) VALUES (1)"))
        conn.execute(text(
            "INSERT INTO servers (id, hostname, openclaw_home) VALUES (1, 'h', '/opt/openclaw')"
        ))
        conn.execute(text(
            "INSERT INTO instances (id, server_id, slug, port, state, config_path, state_dir, "
            "systemd_unit, nginx_domain) VALUES (1, 1, 'legacy', 18789, 'running', "
            "'/s/openclaw.json', '/s', 'openclaw-legacy.service', 'legacy.example.com')"
        ))
        conn.execute(text(
            "INSERT INTO agents (id, instance_id, agent_id, name, workspace_path, is_default) "
            "VALUES (1, 1, 'main', 'Main', '/s/workspaces/main', 1)"
        ))


# =============================================================================
# Fresh database
# =============================================================================

class TestFreshDatabase:
    def test_reaches_latest_version(self, raw_engine):
        assert init_database(raw_engine) == MIGRATIONS[-1].version
        assert _version(raw_engine) == MIGRATIONS[-1].version

    def test_seeds_default_config(self, raw_engine):
        init_database(raw_engine)
        with raw_engine.connect() as conn:
            rows = dict(conn.execute(text("SELECT key, value FROM config")).all())
        assert rows == DEFAULT_CONFIG

    def test_seed_overrides_defaults(self, raw_engine):
        init_database(raw_engine, seed={"port_range_start": "20000", "port_range_end": "20005"})
        registry = Registry(raw_engine)
        assert registry.get_config_int("port_range_start", 0) == 20000
        assert registry.get_config_int("port_range_end", 0) == 20005
        assert registry.get_config("openclaw_user") == "openclaw"

    def test_seed_ignored_for_existing_registry(self, raw_engine):
        init_database(raw_engine)
        init_database(raw_engine, seed={"port_range_start": "20000"})
        assert Registry(raw_engine).get_config_int("port_range_start", 0) == 18789

    def test_is_idempotent(self, raw_engine):
        first = init_database(raw_engine)
        second = init_database(raw_engine)
        assert first == second
        with raw_engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM schema_version")).scalar_one() == 1

    def test_foreign_keys_enforced_after_init(self, raw_engine):
        init_database(raw_engine)
        assert _fk_enabled(raw_engine) == 1

    def test_orm_matches_migrated_columns(self, raw_engine):
        """Every mapped column exists in the migrated tables and vice versa."""
        init_database(raw_engine)
        for table in Base.metadata.sorted_tables:
            assert _columns(raw_engine, table.name) == {c.name for c in table.columns}, table.name


# =============================================================================
# Upgrading existing data
# =============================================================================

class TestUpgrade:
    def test_v1_data_survives(self, raw_engine):
        _seed_v1(raw_engine)
        assert init_database(raw_engine) == MIGRATIONS[-1].version

        with raw_engine.connect() as conn:
            inst = conn.execute(text(
                "SELECT slug, port, state, service_unit FROM instances"
            )).one()
            agent = conn.execute(text(
                "SELECT instance_id, blueprint_id, agent_id, is_default FROM agents"
            )).one()
        assert tuple(inst) == ("legacy", 18789, "running", "openclaw-legacy.service")
        assert tuple(agent) == (1, None, "main", 1)

    def test_v4_drops_proxy_domain_and_renames_unit(self, raw_engine):
        _seed_v1(raw_engine)
        init_database(raw_engine)
        cols = _columns(raw_engine, "instances")
        assert "service_unit" in cols
        assert "systemd_unit" not in cols
        assert "nginx_domain" not in cols

    def test_agent_files_survive_agents_rebuild(self, raw_engine):
        _seed_v1(raw_engine)
        v2_only = [m for m in MIGRATIONS if m.version == 2]
        assert init_database(raw_engine, v2_only) == 2

        with raw_engine.begin() as conn:
            conn.execute(text(
                "INSERT INTO agent_files (agent_id, filename, content) VALUES (1, 'SOUL.md', 'hi')"
            ))

        init_database(raw_engine)
        with raw_engine.connect() as conn:
            files = conn.execute(text("SELECT agent_id, filename FROM agent_files")).all()
        assert [tuple(f) for f in files] == [(1, "SOUL.md")]

    def test_owner_check_enforced_after_v3(self, raw_engine):
        init_database(raw_engine)
        with pytest.raises(IntegrityError, match="CHECK"):
            with raw_engine.begin() as conn:
                conn.execute(text(
                    "INSERT INTO agents (agent_id, name, workspace_path) VALUES ('x', 'X', '/w')"
                ))


# =============================================================================
# Failure handling
# =============================================================================

def _broken(conn) -> None:
    conn.exec_driver_sql("CREATE TABLE half_done (id INTEGER)")
    conn.exec_driver_sql("INSERT INTO no_such_table VALUES (1)")


def _orphan_agent(conn) -> None:
    conn.exec_driver_sql(
        "INSERT INTO agents (instance_id, agent_id, name, workspace_path) VALUES (999, 'ghost', 'G', '/w')"
    )


class TestMigrationFailure:
    def test_failed_migration_rolls_back(self, raw_engine):
        migrations = [*MIGRATIONS, Migration(99, "broken", _broken)]
        with pytest.raises(MigrationError, match="v99"):
            init_database(raw_engine, migrations)

        assert _version(raw_engine) == MIGRATIONS[-1].version
        assert "half_done" not in inspect(raw_engine).get_table_names()

    def test_failed_fk_off_migration_restores_enforcement(self, raw_engine):
        init_database(raw_engine)
        migrations = [*MIGRATIONS, Migration(99, "broken swap", _broken, foreign_keys_off=True)]
        with pytest.raises(MigrationError):
            init_database(raw_engine, migrations)
        assert _fk_enabled(raw_engine) == 1

    def test_foreign_key_violation_aborts(self, raw_engine):
        init_database(raw_engine)
        migrations = [*MIGRATIONS, Migration(99, "orphan", _orphan_agent, foreign_keys_off=True)]
        with pytest.raises(MigrationError, match="foreign key"):
            init_database(raw_engine, migrations)

        assert _version(raw_engine) == MIGRATIONS[-1].version
        with raw_engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM agents")).scalar_one() == 0

    def test_later_migrations_not_attempted(self, raw_engine):
        applied = []
        migrations = [
            *MIGRATIONS,
            Migration(98, "broken", _broken),
            Migration(99, "after", lambda conn: applied.append(99)),
        ]
        with pytest.raises(MigrationError):
            init_database(raw_engine, migrations)
        assert applied == []


class TestValidateMigrations:
    def test_shipped_list_is_ordered(self):
        validate_migrations(MIGRATIONS)

    def test_out_of_order_rejected(self):
        noop = lambda conn: None  # noqa: E731
        with pytest.raises(MigrationError, match="out of order"):
            validate_migrations([Migration(3, "a", noop), Migration(2, "b", noop)])

    def test_base_version_rejected(self):
        with pytest.raises(MigrationError):
            validate_migrations([Migration(BASE_SCHEMA_VERSION, "dup", lambda conn: None)])
