"""
Connection — run commands and touch files on the local host.

No orchestration logic lives here. Every component above takes a
``ServerConnection`` so tests can swap in an in-memory fake.

Commands are always an argument list. ``exec_shell`` exists only for
pipelines with no argument-list equivalent; callers quote every
interpolated value with ``shlex.quote``.
"""

import asyncio
import logging
import os
import platform as _platform
import shutil
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("claw_pilot.connection")

EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


@dataclass
class ExecResult:
    """Outcome of one command."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ServerConnection(ABC):
    """Command + filesystem access to the host being supervised."""

    @abstractmethod
    async def exec(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run ``command`` with ``args``. Never raises on non-zero exit."""

    @abstractmethod
    async def exec_shell(self, script: str, timeout: float | None = None) -> ExecResult:
        """Run a ``/bin/sh -c`` pipeline. Callers must pre-quote values."""

    @abstractmethod
    async def read_file(self, path: str | Path) -> str:
        """Raises FileNotFoundError when absent."""

    @abstractmethod
    async def write_file(self, path: str | Path, content: str, mode: int | None = None) -> None: ...

    @abstractmethod
    async def mkdir(self, path: str | Path, mode: int | None = None) -> None:
        """Create ``path`` and parents; no error when it exists."""

    @abstractmethod
    async def exists(self, path: str | Path) -> bool: ...

    @abstractmethod
    async def remove(self, path: str | Path, recursive: bool = False) -> None:
        """Delete a file (or a tree when ``recursive``). Missing paths are ignored."""

    @abstractmethod
    async def readdir(self, path: str | Path) -> list[str]:
        """Entry names in ``path``; empty list when the directory is missing."""

    @abstractmethod
    async def which(self, command: str) -> str | None: ...

    @abstractmethod
    def hostname(self) -> str: ...

    @abstractmethod
    def platform(self) -> str:
        """``linux``, ``darwin``, ... (``sys.platform`` style)."""


class LocalConnection(ServerConnection):
    """Connection backed by asyncio subprocesses and the local filesystem."""

    def __init__(self, default_timeout: float = 60.0):
        self._default_timeout = default_timeout

    async def exec(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        argv = [command, *(args or [])]
        full_env = {**os.environ, **env} if env else None
        logger.debug("exec: %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
            )
        except FileNotFoundError:
            return ExecResult("", f"command not found: {command}", EXIT_NOT_FOUND)
        return await self._communicate(proc, argv[0], timeout)

    async def exec_shell(self, script: str, timeout: float | None = None) -> ExecResult:
        logger.debug("exec_shell: %s", script)
        proc = await asyncio.create_subprocess_shell(
            script,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return await self._communicate(proc, "sh", timeout)

    async def _communicate(self, proc, label: str, timeout: float | None) -> ExecResult:
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=timeout or self._default_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("%s timed out after %ss", label, timeout or self._default_timeout)
            return ExecResult("", f"{label} timed out", EXIT_TIMEOUT)
        return ExecResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    # ── Files ────────────────────────────────────────────────────────────

    async def read_file(self, path: str | Path) -> str:
        return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")

    async def write_file(self, path: str | Path, content: str, mode: int | None = None) -> None:
        def _write() -> None:
            p = Path(path)
            p.write_text(content, encoding="utf-8")
            if mode is not None:
                p.chmod(mode)

        await asyncio.to_thread(_write)

    async def mkdir(self, path: str | Path, mode: int | None = None) -> None:
        def _mkdir() -> None:
            p = Path(path)
            p.mkdir(parents=True, exist_ok=True)
            if mode is not None:
                p.chmod(mode)

        await asyncio.to_thread(_mkdir)

    async def exists(self, path: str | Path) -> bool:
        return await asyncio.to_thread(Path(path).exists)

    async def remove(self, path: str | Path, recursive: bool = False) -> None:
        def _remove() -> None:
            p = Path(path)
            if p.is_dir() and not p.is_symlink():
                if recursive:
                    shutil.rmtree(p)
                else:
                    p.rmdir()
            else:
                p.unlink(missing_ok=True)

        await asyncio.to_thread(_remove)

    async def readdir(self, path: str | Path) -> list[str]:
        def _list() -> list[str]:
            p = Path(path)
            if not p.is_dir():
                return []
            return sorted(child.name for child in p.iterdir())

        return await asyncio.to_thread(_list)

    async def which(self, command: str) -> str | None:
        return await asyncio.to_thread(shutil.which, command)

    def hostname(self) -> str:
        return socket.gethostname()

    def platform(self) -> str:
        return sys.platform


def local_ip() -> str:
    """Best-effort primary IPv4 of this host (no packets are sent)."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def os_release() -> str:
    return f"{_platform.system()} {_platform.release()}"
