"""
Port allocation — ledger check plus an OS bind-and-release probe.

Known race: two processes can both see the same port as free before
either calls ``Registry.allocate_port``. Callers re-check with
``verify_port`` right before use; nothing here locks across processes.
"""

import asyncio
import errno
import logging
import socket
from collections.abc import Awaitable, Callable

from .exceptions import PortConflictError
from .registry import Registry

logger = logging.getLogger("claw_pilot.port_allocator")

DEFAULT_RANGE = (18789, 18799)

PortProbe = Callable[[int], Awaitable[bool]]


def _bind_and_release(port: int, host: str = "127.0.0.1") -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as e:
        if e.errno not in (errno.EADDRINUSE, errno.EACCES):
            logger.debug("bind probe on %d failed: %s", port, e)
        return False
    finally:
        sock.close()
    return True


async def is_port_bindable(port: int) -> bool:
    """True when nothing is listening on 127.0.0.1:<port>."""
    return await asyncio.to_thread(_bind_and_release, port)


class PortAllocator:
    """Finds free gateway ports in the configured range."""

    def __init__(self, registry: Registry, probe: PortProbe | None = None):
        self.registry = registry
        self._probe = probe or is_port_bindable

    def port_range(self) -> tuple[int, int]:
        start = self.registry.get_config_int("port_range_start", DEFAULT_RANGE[0])
        end = self.registry.get_config_int("port_range_end", DEFAULT_RANGE[1])
        return start, end

    async def find_free_port(self, server_id: int) -> int:
        """First port in range that is neither in the ledger nor bound.

        Raises:
            PortConflictError: the whole range is taken (``port`` is None).
        """
        start, end = self.port_range()
        used = set(self.registry.get_used_ports(server_id))
        for port in range(start, end + 1):
            if port in used:
                continue
            if await self._probe(port):
                return port
            logger.debug("Port %d is free in the ledger but bound on the host", port)
        raise PortConflictError()

    async def verify_port(self, server_id: int, port: int) -> bool:
        if port in self.registry.get_used_ports(server_id):
            return False
        return await self._probe(port)
