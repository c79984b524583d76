"""Teardown order and warning handling."""
from pathlib import Path

import pytest

from claw_pilot.destroyer import Destroyer
from claw_pilot.exceptions import InstanceNotFoundError

from tests.conftest import seed_instance

UNIT_FILE = "/opt/openclaw/.config/systemd/user/openclaw-demo1.service"
STATE_DIR = "/opt/openclaw/.openclaw-demo1"


@pytest.fixture
def destroyer(conn, registry, service_manager, config):
    return Destroyer(conn, registry, service_manager, config)


@pytest.fixture
def installed(conn, registry, server):
    """A registered instance with unit file and state dir on disk."""
    inst = seed_instance(registry, server.id, agents=("main", "pm"))
    conn.add_file(UNIT_FILE, "[Unit]\n")
    conn.add_file(f"{STATE_DIR}/openclaw.json", "{}")
    conn.add_file(f"{STATE_DIR}/workspaces/main/SOUL.md", "hi")
    return inst


class TestDestroy:
    async def test_full_teardown(self, conn, registry, server, destroyer, installed):
        report = await destroyer.destroy("demo1")

        assert report.clean
        assert report.completed == ["stop", "disable", "remove unit", "daemon-reload", "remove state dir"]
        assert not await conn.exists(UNIT_FILE)
        assert not await conn.exists(STATE_DIR)
        assert registry.get_instance("demo1") is None
        assert registry.get_used_ports(server.id) == []
        assert registry.list_events("demo1")[0].event_type == "destroyed"

    async def test_service_commands_in_order(self, conn, destroyer, installed):
        await destroyer.destroy("demo1")
        verbs = [c.split("systemctl --user ")[1].split()[0] for c in conn.commands if "systemctl" in c]
        assert verbs == ["stop", "disable", "daemon-reload"]

    async def test_failing_steps_become_warnings(self, conn, registry, destroyer, installed):
        conn.respond("systemctl --user stop", stderr="not loaded", exit_code=5)
        conn.respond("systemctl --user disable", exit_code=1)

        report = await destroyer.destroy("demo1")

        assert report.warnings == ["stop: not loaded", "disable: exit 1"]
        assert "remove state dir" in report.completed
        assert registry.get_instance("demo1") is None

    async def test_missing_tool_does_not_abort(self, conn, registry, destroyer, installed):
        conn.respond("systemctl", exit_code=127)
        report = await destroyer.destroy("demo1")
        assert len(report.warnings) == 3
        assert registry.get_instance("demo1") is None

    async def test_removes_existing_proxy_files(self, conn, destroyer, installed):
        site = Path("/etc/nginx/sites-enabled/openclaw-demo1.conf")
        conn.add_file(site, "server {}")
        report = await destroyer.destroy("demo1")
        assert f"remove {site}" in report.completed
        assert not await conn.exists(site)

    async def test_unknown_slug_has_no_side_effects(self, conn, destroyer):
        with pytest.raises(InstanceNotFoundError):
            await destroyer.destroy("ghost")
        assert conn.commands == []


def test_proxy_artifacts(destroyer):
    paths = [str(p) for p in destroyer.proxy_artifacts("x")]
    assert paths == [
        "/etc/nginx/sites-enabled/openclaw-x",
        "/etc/nginx/sites-enabled/openclaw-x.conf",
        "/etc/nginx/sites-available/openclaw-x",
        "/etc/nginx/sites-available/openclaw-x.conf",
    ]
