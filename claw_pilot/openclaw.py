"""Detection of the installed openclaw binary."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .connection import ServerConnection
from .exceptions import OpenClawNotFoundError

logger = logging.getLogger("claw_pilot.openclaw")

BINARY_NAME = "openclaw"

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+(?:[-.][0-9A-Za-z.]+)?)")


@dataclass
class OpenClawInstall:
    bin: str
    version: str | None


def _candidate_paths(home: Path) -> list[str]:
    return [
        str(home / ".npm-global" / "bin" / BINARY_NAME),
        str(home / ".local" / "bin" / BINARY_NAME),
        f"/usr/local/bin/{BINARY_NAME}",
        f"/opt/homebrew/bin/{BINARY_NAME}",
    ]


async def detect_openclaw(conn: ServerConnection, home: Path) -> OpenClawInstall | None:
    """Locate openclaw on PATH or in the usual npm prefixes; ``None`` if absent."""
    path = await conn.which(BINARY_NAME)
    if path is None:
        for candidate in _candidate_paths(home):
            if await conn.exists(candidate):
                path = candidate
                break
    if path is None:
        return None

    result = await conn.exec(path, ["--version"])
    version = None
    if result.ok:
        match = _VERSION_RE.search(result.stdout)
        version = match.group(1) if match else result.stdout.strip() or None
    else:
        logger.warning("%s --version exited %d", path, result.exit_code)
    return OpenClawInstall(bin=path, version=version)


async def require_openclaw(conn: ServerConnection, home: Path) -> OpenClawInstall:
    install = await detect_openclaw(conn, home)
    if install is None:
        raise OpenClawNotFoundError()
    return install
