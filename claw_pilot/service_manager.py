"""
Service manager abstraction — systemd (Linux) and launchd (macOS).

Discovery, Lifecycle, HealthChecker and Destroyer depend only on the
``ServiceManager`` interface; ``detect_service_manager`` picks the
implementation once per process.

All operations take an instance slug; the unit name / label is derived
from it deterministically.
"""

import logging
import plistlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .config import PilotConfig
from .connection import EXIT_NOT_FOUND, ExecResult, ServerConnection
from .exceptions import ToolNotFoundError

logger = logging.getLogger("claw_pilot.service_manager")

SERVICE_STATES = ("active", "inactive", "failed")

_NOOP = ExecResult(stdout="", stderr="", exit_code=0)


@dataclass
class UnitInfo:
    """One installed unit as reported by the service manager."""
    unit: str
    slug: str
    state: str


@dataclass
class ProcessInfo:
    pid: int | None = None
    since: str | None = None


class ServiceManager(ABC):
    """Start/stop/query the per-instance gateway service."""

    name: str = ""

    def __init__(self, conn: ServerConnection, config: PilotConfig):
        self.conn = conn
        self.config = config

    @abstractmethod
    def unit_name(self, slug: str) -> str: ...

    @abstractmethod
    def unit_path(self, slug: str) -> Path:
        """Unit descriptor file (systemd unit or launchd plist)."""

    @abstractmethod
    async def start(self, slug: str) -> ExecResult: ...

    @abstractmethod
    async def stop(self, slug: str) -> ExecResult: ...

    @abstractmethod
    async def restart(self, slug: str) -> ExecResult: ...

    @abstractmethod
    async def enable(self, slug: str) -> ExecResult: ...

    @abstractmethod
    async def disable(self, slug: str) -> ExecResult: ...

    @abstractmethod
    async def daemon_reload(self) -> ExecResult: ...

    @abstractmethod
    async def is_active(self, slug: str) -> str:
        """``active`` | ``inactive`` | ``failed`` | ``unknown``."""

    @abstractmethod
    async def list_units(self) -> list[UnitInfo]: ...

    @abstractmethod
    async def state_dir_of(self, slug: str) -> str | None:
        """``OPENCLAW_STATE_DIR`` from the unit's environment, if set."""

    @abstractmethod
    async def process_info(self, slug: str) -> ProcessInfo: ...


# ── systemd ──────────────────────────────────────────────────────────────────

class SystemdManager(ServiceManager):
    """``systemctl --user`` with an explicit XDG_RUNTIME_DIR."""

    name = "systemd"

    def __init__(self, conn: ServerConnection, config: PilotConfig, xdg_runtime_dir: str):
        super().__init__(conn, config)
        self.xdg_runtime_dir = xdg_runtime_dir
        self._unit_re = re.compile(
            rf"^{re.escape(config.unit_prefix)}([a-z0-9][a-z0-9-]*)\.service$"
        )

    async def _systemctl(self, *args: str) -> ExecResult:
        result = await self.conn.exec(
            "systemctl",
            ["--user", *args],
            env={"XDG_RUNTIME_DIR": self.xdg_runtime_dir},
        )
        if result.exit_code == EXIT_NOT_FOUND:
            raise ToolNotFoundError("systemctl")
        return result

    def unit_name(self, slug: str) -> str:
        return f"{self.config.unit_prefix}{slug}.service"

    def unit_path(self, slug: str) -> Path:
        return self.config.systemd_unit_dir / self.unit_name(slug)

    async def start(self, slug: str) -> ExecResult:
        return await self._systemctl("start", self.unit_name(slug))

    async def stop(self, slug: str) -> ExecResult:
        return await self._systemctl("stop", self.unit_name(slug))

    async def restart(self, slug: str) -> ExecResult:
        return await self._systemctl("restart", self.unit_name(slug))

    async def enable(self, slug: str) -> ExecResult:
        return await self._systemctl("enable", self.unit_name(slug))

    async def disable(self, slug: str) -> ExecResult:
        return await self._systemctl("disable", self.unit_name(slug))

    async def daemon_reload(self) -> ExecResult:
        return await self._systemctl("daemon-reload")

    async def is_active(self, slug: str) -> str:
        try:
            result = await self._systemctl("is-active", self.unit_name(slug))
        except ToolNotFoundError:
            return "unknown"
        state = result.stdout.strip()
        return state if state in SERVICE_STATES else "unknown"

    async def list_units(self) -> list[UnitInfo]:
        result = await self._systemctl(
            "list-units", f"{self.config.unit_prefix}*",
            "--all", "--no-pager", "--plain", "--no-legend",
        )
        units: list[UnitInfo] = []
        for line in result.stdout.splitlines():
            # UNIT LOAD ACTIVE SUB DESCRIPTION
            parts = line.split()
            if len(parts) < 3:
                continue
            match = self._unit_re.match(parts[0])
            if not match:
                continue
            active = parts[2]
            if active == "active":
                state = "active"
            elif active == "failed":
                state = "failed"
            else:
                state = "inactive"
            units.append(UnitInfo(unit=parts[0], slug=match.group(1), state=state))
        return units

    async def state_dir_of(self, slug: str) -> str | None:
        result = await self._systemctl(
            "show", self.unit_name(slug), "--property=Environment", "--value",
        )
        match = re.search(r"OPENCLAW_STATE_DIR=(\S+)", result.stdout)
        return match.group(1) if match else None

    async def process_info(self, slug: str) -> ProcessInfo:
        result = await self._systemctl(
            "show", self.unit_name(slug), "--property=MainPID,ActiveEnterTimestamp",
        )
        props = dict(
            line.split("=", 1) for line in result.stdout.splitlines() if "=" in line
        )
        info = ProcessInfo()
        pid = props.get("MainPID", "").strip()
        if pid.isdigit() and int(pid) > 0:
            info.pid = int(pid)
        since = props.get("ActiveEnterTimestamp", "").strip()
        info.since = since or None
        return info


# ── launchd ──────────────────────────────────────────────────────────────────

class LaunchdManager(ServiceManager):
    """``launchctl`` over per-user LaunchAgents plists."""

    name = "launchd"

    _PID_RE = re.compile(r'"PID"\s*=\s*(\d+);')
    _EXIT_RE = re.compile(r'"LastExitStatus"\s*=\s*(-?\d+);')

    async def _launchctl(self, *args: str) -> ExecResult:
        result = await self.conn.exec("launchctl", list(args))
        if result.exit_code == EXIT_NOT_FOUND:
            raise ToolNotFoundError("launchctl")
        return result

    def unit_name(self, slug: str) -> str:
        return f"{self.config.launchd_label_prefix}{slug}"

    def unit_path(self, slug: str) -> Path:
        return self.config.launchd_agents_dir / f"{self.unit_name(slug)}.plist"

    async def start(self, slug: str) -> ExecResult:
        return await self._launchctl("load", "-w", str(self.unit_path(slug)))

    async def stop(self, slug: str) -> ExecResult:
        return await self._launchctl("unload", str(self.unit_path(slug)))

    async def restart(self, slug: str) -> ExecResult:
        unloaded = await self.stop(slug)
        if not unloaded.ok:
            logger.debug("launchctl unload %s exited %d", slug, unloaded.exit_code)
        return await self.start(slug)

    async def enable(self, slug: str) -> ExecResult:
        # RunAtLoad in the plist covers auto-start
        return _NOOP

    async def disable(self, slug: str) -> ExecResult:
        return _NOOP

    async def daemon_reload(self) -> ExecResult:
        return _NOOP

    async def is_active(self, slug: str) -> str:
        try:
            result = await self._launchctl("list", self.unit_name(slug))
        except ToolNotFoundError:
            return "unknown"
        if not result.ok:
            return "inactive"
        if self._PID_RE.search(result.stdout):
            return "active"
        exit_match = self._EXIT_RE.search(result.stdout)
        if exit_match and int(exit_match.group(1)) != 0:
            return "failed"
        return "inactive"

    async def list_units(self) -> list[UnitInfo]:
        prefix = self.config.launchd_label_prefix
        units: list[UnitInfo] = []
        for entry in await self.conn.readdir(self.config.launchd_agents_dir):
            if not (entry.startswith(prefix) and entry.endswith(".plist")):
                continue
            slug = entry[len(prefix):-len(".plist")]
            if not slug:
                continue
            units.append(UnitInfo(
                unit=self.unit_name(slug),
                slug=slug,
                state=await self.is_active(slug),
            ))
        return units

    async def state_dir_of(self, slug: str) -> str | None:
        try:
            raw = await self.conn.read_file(self.unit_path(slug))
            plist = plistlib.loads(raw.encode("utf-8"))
        except (OSError, plistlib.InvalidFileException, ValueError) as e:
            logger.debug("cannot read plist for %s: %s", slug, e)
            return None
        env = plist.get("EnvironmentVariables") or {}
        return env.get("OPENCLAW_STATE_DIR")

    async def process_info(self, slug: str) -> ProcessInfo:
        result = await self._launchctl("list", self.unit_name(slug))
        info = ProcessInfo()
        if result.ok:
            match = self._PID_RE.search(result.stdout)
            if match:
                info.pid = int(match.group(1))
        return info


def detect_service_manager(
    conn: ServerConnection,
    config: PilotConfig,
    xdg_runtime_dir: str,
) -> ServiceManager:
    """Pick the implementation for this host. Called once per process."""
    if conn.platform() == "darwin":
        return LaunchdManager(conn, config)
    return SystemdManager(conn, config, xdg_runtime_dir)
