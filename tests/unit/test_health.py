"""Tests for HealthChecker and HealthStatus."""
import json

import pytest
from sqlalchemy.exc import OperationalError

from claw_pilot.exceptions import InstanceNotFoundError
from claw_pilot.health import HealthChecker, HealthStatus, inferred_state

from tests.conftest import seed_instance

IS_ACTIVE = "systemctl --user is-active"


@pytest.fixture
def make_checker(conn, registry, service_manager, config):
    def _make(http):
        return HealthChecker(conn, registry, service_manager, config, http_client=http)
    return _make


# =============================================================================
# HealthStatus
# =============================================================================

class TestHealthStatus:
    def test_only_gateway_decides_healthy(self):
        assert HealthStatus("a", 1, gateway="healthy", service="failed").healthy is True
        assert HealthStatus("a", 1, gateway="unhealthy", service="active").healthy is False

    def test_to_dict(self):
        data = HealthStatus("a", 18789, gateway="healthy").to_dict()
        assert data["healthy"] is True
        assert data["slug"] == "a"
        assert data["telegram"] is None

    @pytest.mark.parametrize("gateway, service, expected", [
        ("healthy", "inactive", "running"),
        ("unhealthy", "inactive", "stopped"),
        ("unhealthy", "failed", "error"),
        ("unhealthy", "active", "unknown"),
        ("unknown", "unknown", "unknown"),
    ])
    def test_inferred_state(self, gateway, service, expected):
        assert inferred_state(HealthStatus("a", 1, gateway=gateway, service=service)) == expected


# =============================================================================
# check
# =============================================================================

class TestCheck:
    async def test_healthy_active_instance(self, conn, registry, server, make_checker, healthy_http):
        seed_instance(registry, server.id, agents=("main", "pm"))
        conn.respond(IS_ACTIVE, stdout="active\n")
        conn.respond("--property=MainPID", stdout="MainPID=4242\nActiveEnterTimestamp=Mon 2026-01-05 10:00:00 UTC\n")

        status = await make_checker(healthy_http).check("demo1")

        assert status.healthy
        assert (status.gateway, status.service) == ("healthy", "active")
        assert status.pid == 4242
        assert status.since == "Mon 2026-01-05 10:00:00 UTC"
        assert status.agent_count == 2
        assert status.telegram == "not_configured"
        assert registry.get_instance("demo1").state == "running"

    async def test_active_service_with_silent_gateway(self, conn, registry, server, make_checker, dead_http):
        seed_instance(registry, server.id, state="running")
        conn.respond(IS_ACTIVE, stdout="active\n")

        status = await make_checker(dead_http).check("demo1")

        assert status.healthy is False
        assert status.service == "active"
        assert registry.get_instance("demo1").state == "unknown"

    async def test_failed_service(self, conn, registry, server, make_checker, dead_http):
        seed_instance(registry, server.id, state="running")
        conn.respond(IS_ACTIVE, stdout="failed\n", exit_code=3)

        status = await make_checker(dead_http).check("demo1")

        assert status.pid is None
        assert registry.get_instance("demo1").state == "error"
        assert not conn.ran("--property=MainPID")

    async def test_missing_systemctl_reads_unknown(self, conn, registry, server, make_checker, dead_http):
        seed_instance(registry, server.id)
        conn.respond(IS_ACTIVE, exit_code=127)
        status = await make_checker(dead_http).check("demo1")
        assert status.service == "unknown"

    async def test_unknown_slug(self, make_checker, healthy_http):
        with pytest.raises(InstanceNotFoundError):
            await make_checker(healthy_http).check("ghost")


class TestTelegram:
    async def test_connected_when_marker_in_log(self, conn, registry, server, make_checker, healthy_http):
        seed_instance(registry, server.id, telegram_bot="@demo_bot")
        conn.respond("grep -c", stdout="3\n")

        status = await make_checker(healthy_http).check("demo1")

        assert status.telegram == "connected"
        assert conn.ran("tail -200 /tmp/openclaw-test/openclaw-")

    async def test_disconnected_without_marker(self, conn, registry, server, make_checker, healthy_http):
        seed_instance(registry, server.id, telegram_bot="@demo_bot")
        conn.respond("grep -c", stdout="0\n")
        assert (await make_checker(healthy_http).check("demo1")).telegram == "disconnected"

    async def test_enabled_in_config_file(self, conn, registry, server, make_checker, healthy_http):
        inst = seed_instance(registry, server.id)
        conn.add_file(inst.config_path, json.dumps({"channels": {"telegram": {"enabled": True}}}))
        conn.respond("grep -c", stdout="garbage\n")
        assert (await make_checker(healthy_http).check("demo1")).telegram == "disconnected"


# =============================================================================
# check_all
# =============================================================================

class TestCheckAll:
    async def test_one_per_instance_in_slug_order(self, registry, server, make_checker, healthy_http):
        seed_instance(registry, server.id, slug="b", port=18790)
        seed_instance(registry, server.id, slug="a", port=18789)
        statuses = await make_checker(healthy_http).check_all()
        assert [s.slug for s in statuses] == ["a", "b"]
        assert all(s.healthy for s in statuses)

    async def test_failure_becomes_error_status(self, registry, server, make_checker, healthy_http, monkeypatch):
        seed_instance(registry, server.id, slug="a", port=18789)
        seed_instance(registry, server.id, slug="b", port=18790)
        checker = make_checker(healthy_http)
        original = checker.check

        async def flaky(slug):
            if slug == "a":
                raise OSError("disk gone")
            return await original(slug)

        monkeypatch.setattr(checker, "check", flaky)
        statuses = await checker.check_all()

        assert statuses[0].error == "disk gone"
        assert statuses[0].healthy is False
        assert statuses[1].healthy is True

    async def test_database_error_does_not_stop_batch(self, registry, server, make_checker, healthy_http, monkeypatch):
        seed_instance(registry, server.id, slug="aaa", port=18789)
        seed_instance(registry, server.id, slug="bbb", port=18790)
        original = registry.update_instance_state

        def locked(slug, state):
            if slug == "aaa":
                raise OperationalError("UPDATE instances", {}, Exception("database is locked"))
            return original(slug, state)

        monkeypatch.setattr(registry, "update_instance_state", locked)
        statuses = await make_checker(healthy_http).check_all()

        assert [s.slug for s in statuses] == ["aaa", "bbb"]
        assert "database is locked" in statuses[0].error
        assert statuses[0].gateway == "unknown"
        assert statuses[1].healthy is True

    async def test_undecodable_config_reads_as_no_channel(self, conn, registry, server, make_checker, healthy_http):
        aaa = seed_instance(registry, server.id, slug="aaa", port=18789)
        seed_instance(registry, server.id, slug="bbb", port=18790)
        conn.fail_read(aaa.config_path, UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))

        statuses = await make_checker(healthy_http).check_all()

        assert [(s.slug, s.healthy, s.telegram) for s in statuses] == [
            ("aaa", True, "not_configured"),
            ("bbb", True, "not_configured"),
        ]

    async def test_empty_registry(self, make_checker, healthy_http):
        assert await make_checker(healthy_http).check_all() == []
