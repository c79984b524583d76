"""Tests for openclaw binary detection and the gateway probe."""
from pathlib import Path

import httpx
import pytest

from claw_pilot.exceptions import OpenClawNotFoundError
from claw_pilot.openclaw import detect_openclaw, require_openclaw
from claw_pilot.probe import health_url, probe_gateway

HOME = Path("/home/oc")


class TestDetect:
    async def test_on_path(self, conn):
        conn.binaries["openclaw"] = "/usr/bin/openclaw"
        conn.respond("/usr/bin/openclaw --version", stdout="openclaw 2026.1.15\n")
        install = await detect_openclaw(conn, HOME)
        assert (install.bin, install.version) == ("/usr/bin/openclaw", "2026.1.15")

    async def test_npm_prefix_fallback(self, conn):
        conn.add_file(HOME / ".npm-global" / "bin" / "openclaw", "#!/bin/sh")
        conn.respond("--version", stdout="1.4.0-beta.2")
        install = await detect_openclaw(conn, HOME)
        assert install.bin == "/home/oc/.npm-global/bin/openclaw"
        assert install.version == "1.4.0-beta.2"

    async def test_version_failure_keeps_binary(self, conn):
        conn.binaries["openclaw"] = "/usr/bin/openclaw"
        conn.respond("--version", exit_code=1)
        install = await detect_openclaw(conn, HOME)
        assert install.version is None

    async def test_absent(self, conn):
        assert await detect_openclaw(conn, HOME) is None
        with pytest.raises(OpenClawNotFoundError):
            await require_openclaw(conn, HOME)


class TestProbe:
    def test_url(self):
        assert health_url(18789) == "http://127.0.0.1:18789/health"

    @pytest.mark.parametrize("status, expected", [(200, True), (204, True), (503, False), (404, False)])
    async def test_status_codes(self, status, expected):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(status)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await probe_gateway(18789, client=client) is expected
        assert seen == ["http://127.0.0.1:18789/health"]

    async def test_transport_error_is_false(self, dead_http):
        assert await probe_gateway(18789, client=dead_http) is False

    async def test_timeout_is_false(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await probe_gateway(18789, timeout=0.01, client=client) is False
