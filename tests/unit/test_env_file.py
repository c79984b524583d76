"""Tests for the per-instance .env secret file."""
import pytest

from claw_pilot.env_file import (
    GATEWAY_TOKEN_KEY,
    env_file_path,
    generate_dashboard_token,
    generate_gateway_token,
    mask_secret,
    parse_env,
    read_env,
    read_gateway_token,
    write_env_value,
    write_gateway_token,
)

STATE_DIR = "/opt/openclaw/.openclaw-demo1"


class TestParse:
    def test_parse(self):
        content = (
            "# comment\n"
            "\n"
            "OPENCLAW_GW_AUTH_TOKEN=abc123\n"
            "export ANTHROPIC_API_KEY='sk-ant'\n"
            'QUOTED="a b"\n'
            "no equals sign\n"
            "EMPTY=\n"
        )
        assert parse_env(content) == {
            "OPENCLAW_GW_AUTH_TOKEN": "abc123",
            "ANTHROPIC_API_KEY": "sk-ant",
            "QUOTED": "a b",
            "EMPTY": "",
        }

    def test_value_may_contain_equals(self):
        assert parse_env("K=a=b\n") == {"K": "a=b"}


class TestReadWrite:
    async def test_missing_file(self, conn):
        assert await read_env(conn, STATE_DIR) is None
        assert await read_gateway_token(conn, STATE_DIR) is None

    async def test_missing_key(self, conn):
        conn.add_file(env_file_path(STATE_DIR), "OTHER=1\n")
        assert await read_gateway_token(conn, STATE_DIR) is None

    async def test_write_preserves_other_keys(self, conn):
        conn.add_file(env_file_path(STATE_DIR), "ANTHROPIC_API_KEY=sk\nOPENCLAW_GW_AUTH_TOKEN=old\n")
        await write_gateway_token(conn, STATE_DIR, "new")

        values = await read_env(conn, STATE_DIR)
        assert values == {"ANTHROPIC_API_KEY": "sk", GATEWAY_TOKEN_KEY: "new"}
        assert conn.modes[str(env_file_path(STATE_DIR))] == 0o600

    async def test_write_creates_file(self, conn):
        await write_env_value(conn, STATE_DIR, "K", "v", mode=0o640)
        assert conn.files[str(env_file_path(STATE_DIR))] == "K=v\n"
        assert conn.modes[str(env_file_path(STATE_DIR))] == 0o640


class TestTokens:
    def test_lengths(self):
        assert len(generate_gateway_token()) == 48
        assert len(generate_dashboard_token()) == 64
        assert generate_gateway_token() != generate_gateway_token()

    @pytest.mark.parametrize("value, masked", [
        ("0123456789abcdef", "01234567***"),
        ("short", "***"),
        ("12345678", "***"),
    ])
    def test_mask(self, value, masked):
        assert mask_secret(value) == masked
