"""
Per-instance secret file (``<state_dir>/.env``).

``KEY=VALUE`` per line. This module is the only reader and writer of the
gateway auth token; a missing file or key reads as ``None``.
"""

import secrets
from pathlib import Path

from .connection import ServerConnection

ENV_FILE_NAME = ".env"
GATEWAY_TOKEN_KEY = "OPENCLAW_GW_AUTH_TOKEN"


def env_file_path(state_dir: str | Path) -> Path:
    return Path(state_dir) / ENV_FILE_NAME


def parse_env(content: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines. Comments, blanks and malformed lines are skipped."""
    values: dict[str, str] = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def render_env(values: dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in values.items())


async def read_env(conn: ServerConnection, state_dir: str | Path) -> dict[str, str] | None:
    try:
        content = await conn.read_file(env_file_path(state_dir))
    except FileNotFoundError:
        return None
    return parse_env(content)


async def read_env_value(conn: ServerConnection, state_dir: str | Path, key: str) -> str | None:
    values = await read_env(conn, state_dir)
    if values is None:
        return None
    return values.get(key)


async def read_gateway_token(conn: ServerConnection, state_dir: str | Path) -> str | None:
    return await read_env_value(conn, state_dir, GATEWAY_TOKEN_KEY)


async def write_env_value(
    conn: ServerConnection,
    state_dir: str | Path,
    key: str,
    value: str,
    mode: int = 0o600,
) -> None:
    """Set one key, preserving the others. The file is (re)written with ``mode``."""
    values = await read_env(conn, state_dir) or {}
    values[key] = value
    await conn.write_file(env_file_path(state_dir), render_env(values), mode=mode)


async def write_gateway_token(
    conn: ServerConnection,
    state_dir: str | Path,
    token: str,
    mode: int = 0o600,
) -> None:
    await write_env_value(conn, state_dir, GATEWAY_TOKEN_KEY, token, mode=mode)


def generate_gateway_token() -> str:
    return secrets.token_hex(24)


def generate_dashboard_token() -> str:
    return secrets.token_hex(32)


def mask_secret(value: str, visible: int = 8) -> str:
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}***"
