"""XDG runtime directory resolution for ``systemctl --user`` calls.

Resolved once per process and handed to every component explicitly.
"""

import logging
import os

from .connection import ServerConnection

logger = logging.getLogger("claw_pilot.runtime")


async def resolve_xdg_runtime_dir(
    conn: ServerConnection,
    fallback_uid: int = 1000,
) -> str:
    """Return ``/run/user/<uid>`` for the current user.

    ``id -u`` failing, or reporting root, falls back to ``fallback_uid``:
    the services run under the unprivileged openclaw user. macOS has no
    per-user runtime dir; the inherited value (possibly empty) is returned.
    """
    if conn.platform() == "darwin":
        return os.environ.get("XDG_RUNTIME_DIR", "")

    result = await conn.exec("id", ["-u"])
    uid = fallback_uid
    if result.ok:
        try:
            parsed = int(result.stdout.strip())
        except ValueError:
            logger.debug("id -u returned non-numeric output: %r", result.stdout)
        else:
            if parsed > 0:
                uid = parsed
    else:
        logger.debug("id -u failed (exit %d), using uid %d", result.exit_code, fallback_uid)
    return f"/run/user/{uid}"
