"""
claw-pilot test suite — shared fixtures.

Every test gets a fresh SQLite registry under ``tmp_path`` and an
in-memory FakeConnection; nothing touches systemd, launchd or the
network. Gateway probes go through httpx MockTransport clients.
"""
import json
from pathlib import Path

import httpx
import pytest

from claw_pilot.config import PilotConfig
from claw_pilot.db.schema import init_database
from claw_pilot.db.session import create_registry_engine
from claw_pilot.registry import NewAgent, Registry
from claw_pilot.service_manager import SystemdManager

from tests.fakes import FakeConnection

OPENCLAW_HOME = Path("/opt/openclaw")


# ── Config & registry ─────────────────────────────────────────────────────────

@pytest.fixture
def config(tmp_path):
    """Config with a real data dir and timeouts short enough for unit tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return PilotConfig(
        data_dir=data_dir,
        openclaw_home=OPENCLAW_HOME,
        gateway_log_dir=Path("/tmp/openclaw-test"),
        health_check_timeout=0.05,
        gateway_ready_timeout=0.2,
        poll_interval=0.01,
        poll_probe_timeout=0.05,
    )


@pytest.fixture
def engine(config):
    """Migrated registry engine, disposed after the test."""
    eng = create_registry_engine(config.db_path)
    init_database(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def registry(engine):
    return Registry(engine)


@pytest.fixture
def server(registry):
    return registry.upsert_local_server(hostname="test-host", openclaw_home=str(OPENCLAW_HOME))


# ── Host fakes ────────────────────────────────────────────────────────────────

@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def service_manager(conn, config):
    return SystemdManager(conn, config, "/run/user/1000")


# ── Gateway HTTP ──────────────────────────────────────────────────────────────

def _healthy(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"ok": True})


def _dead(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


@pytest.fixture
async def healthy_http():
    """AsyncClient whose every /health answers 200."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(_healthy)) as client:
        yield client


@pytest.fixture
async def dead_http():
    """AsyncClient whose every request is refused."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(_dead)) as client:
        yield client


# ── Helpers ───────────────────────────────────────────────────────────────────

def write_instance_config(conn: FakeConnection, slug: str, config: dict, home: Path = OPENCLAW_HOME) -> Path:
    """Drop ``openclaw.json`` into ``<home>/.openclaw-<slug>/``."""
    path = home / f".openclaw-{slug}" / "openclaw.json"
    conn.add_file(path, json.dumps(config))
    return path


def seed_instance(
    registry: Registry,
    server_id: int,
    slug: str = "demo1",
    port: int = 18789,
    agents: tuple[str, ...] = ("main",),
    state: str = "stopped",
    **fields,
):
    """Register an instance with agents and a port row, like an adopt would."""
    state_dir = str(OPENCLAW_HOME / f".openclaw-{slug}")
    return registry.register_instance(
        server_id=server_id,
        slug=slug,
        port=port,
        config_path=f"{state_dir}/openclaw.json",
        state_dir=state_dir,
        service_unit=f"openclaw-{slug}.service",
        state=state,
        agents=[
            NewAgent(
                agent_id=agent_id,
                name=agent_id.capitalize(),
                workspace_path=f"{state_dir}/workspaces/{agent_id}",
                is_default=agent_id == "main",
            )
            for agent_id in agents
        ],
        event_type="created",
        **fields,
    )
