"""
Dashboard token authentication.

A random token is persisted at ``<data_dir>/dashboard-token`` (0600) on
first start; every ``/api`` route except ``/api/health`` requires it in
the ``X-API-Key`` header.
"""

import logging
import secrets

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from ..config import PilotConfig
from ..connection import ServerConnection
from ..env_file import generate_dashboard_token

_logger = logging.getLogger("claw_pilot.dashboard.auth")

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def ensure_dashboard_token(conn: ServerConnection, config: PilotConfig) -> str:
    """Read the persisted token, creating it on first use."""
    path = config.dashboard_token_path
    try:
        token = (await conn.read_file(path)).strip()
    except FileNotFoundError:
        token = ""
    if token:
        return token
    token = generate_dashboard_token()
    await conn.write_file(path, token + "\n", mode=config.secret_file_mode)
    _logger.info("Generated dashboard token at %s", path)
    return token


async def require_token(request: Request, api_key: str = Security(API_KEY_HEADER)) -> str:
    expected: str = request.app.state.token
    if not api_key or not secrets.compare_digest(api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key
