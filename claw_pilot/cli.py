"""
Command-line interface for claw-pilot.

Each command opens one context and calls one core operation.
Any failure prints ``✗ <message>`` and exits non-zero.

Usage:
    claw-pilot init [--yes]
    claw-pilot list [--json]
    claw-pilot status <slug> [--json]
    claw-pilot start|stop|restart <slug>
    claw-pilot destroy <slug> [--yes]
    claw-pilot doctor [slug]
    claw-pilot logs <slug> [-n N]
    claw-pilot token <slug> [--url | --rotate]
    claw-pilot dashboard [--host H] [--port P]
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable

import uvicorn

from . import __version__
from .config import PilotConfig
from .connection import ServerConnection, local_ip, os_release
from .context import PilotContext, open_context
from .dashboard.server import create_app
from .env_file import (
    env_file_path,
    generate_gateway_token,
    mask_secret,
    read_gateway_token,
    write_gateway_token,
)
from .exceptions import PilotError
from .health import HealthStatus
from .logging_config import configure_logging, correlation_scope
from .openclaw import detect_openclaw

logger = logging.getLogger("claw_pilot.cli")

MAX_LOG_LINES = 100_000


def _confirm(message: str, default: bool) -> bool:
    hint = "[Y/n]" if default else "[y/N]"
    try:
        answer = input(f"{message} {hint} ").strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ("y", "yes")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


# ── Commands ─────────────────────────────────────────────────────────────────

async def cmd_init(ctx: PilotContext, args: argparse.Namespace) -> int:
    """Register the host, then discover and adopt existing instances."""
    print(f"✓ Registry: {ctx.config.db_path}")

    install = await detect_openclaw(ctx.conn, ctx.config.openclaw_home)
    if install:
        print(f"✓ OpenClaw {install.version or '(unknown version)'} ({install.bin})")
    else:
        print("⚠ OpenClaw not found: start/restart will fail until it is installed")

    server = ctx.registry.upsert_local_server(
        hostname=ctx.conn.hostname(),
        openclaw_home=str(ctx.config.openclaw_home),
        ip=local_ip(),
        openclaw_bin=install.bin if install else None,
        openclaw_version=install.version if install else None,
        os=os_release(),
    )

    print("\nScanning for existing OpenClaw instances...")
    discovery = ctx.discovery()
    result = await discovery.scan(probe_gateways=True)
    if not result.instances:
        print("  No existing instances found.")
    for inst in result.instances:
        label = "NEW" if inst in result.new_instances else "registered"
        print(
            f"  [{label}] {inst.slug}  port:{inst.port}  "
            f"gateway:{'up' if inst.gateway_healthy else 'down'}  "
            f"service:{inst.service_state or 'none'}  "
            f"agents:{len(inst.agents)}  (source: {inst.source})"
        )

    if result.new_instances:
        count = len(result.new_instances)
        if args.yes or _confirm(f"Adopt {count} new instance(s) into the registry?", True):
            for inst in result.new_instances:
                discovery.adopt(inst, server.id)
                print(f"✓ Adopted: {inst.slug} ({len(inst.agents)} agents, port {inst.port})")

    if result.removed_slugs:
        print("\n⚠ In registry but no longer found on disk:")
        for slug in result.removed_slugs:
            print(f"  - {slug}")
        # Never auto-delete in --yes mode.
        if not args.yes and _confirm(f"Remove {len(result.removed_slugs)} stale instance(s) from the registry?", False):
            for slug in result.removed_slugs:
                ctx.registry.remove_instance(slug, event_type="removed", event_detail="No longer found on disk")
                print(f"✓ Removed: {slug}")

    print(f"\n✓ {len(ctx.registry.list_instances())} instance(s) registered")
    return 0


def _status_line(status: HealthStatus) -> str:
    mark = "✓" if status.healthy else "✗"
    line = (
        f"{mark} {status.slug:<16} port:{status.port:<6} gateway:{status.gateway:<10} "
        f"service:{status.service:<9} agents:{status.agent_count if status.agent_count is not None else '-'}"
    )
    if status.telegram and status.telegram != "not_configured":
        line += f"  telegram:{status.telegram}"
    if status.error:
        line += f"  error:{status.error}"
    return line


async def cmd_list(ctx: PilotContext, args: argparse.Namespace) -> int:
    statuses = await ctx.health().check_all()
    if args.json:
        _print_json([s.to_dict() for s in statuses])
        return 0
    if not statuses:
        print("No instances registered. Run: claw-pilot init")
        return 0
    for status in statuses:
        print(_status_line(status))
    return 0


async def cmd_status(ctx: PilotContext, args: argparse.Namespace) -> int:
    status = await ctx.health().check(args.slug)
    if args.json:
        _print_json(status.to_dict())
        return 0
    print(_status_line(status))
    if status.pid:
        print(f"  pid:   {status.pid}")
    if status.since:
        print(f"  since: {status.since}")
    return 0


async def cmd_start(ctx: PilotContext, args: argparse.Namespace) -> int:
    instance = await ctx.lifecycle().start(args.slug)
    print(f"✓ {args.slug} started (port {instance.port})")
    return 0


async def cmd_stop(ctx: PilotContext, args: argparse.Namespace) -> int:
    await ctx.lifecycle().stop(args.slug)
    print(f"✓ {args.slug} stopped")
    return 0


async def cmd_restart(ctx: PilotContext, args: argparse.Namespace) -> int:
    instance = await ctx.lifecycle().restart(args.slug)
    print(f"✓ {args.slug} restarted (port {instance.port})")
    return 0


async def cmd_destroy(ctx: PilotContext, args: argparse.Namespace) -> int:
    instance = ctx.registry.require_instance(args.slug)
    if not args.yes and not _confirm(
        f"Destroy {args.slug}? This deletes {instance.state_dir} and cannot be undone.", False
    ):
        print("Aborted.")
        return 1
    report = await ctx.destroyer().destroy(args.slug)
    for warning in report.warnings:
        print(f"⚠ {warning}")
    print(f"✓ {args.slug} destroyed (port {instance.port} released)")
    return 0


async def cmd_doctor(ctx: PilotContext, args: argparse.Namespace) -> int:
    ok = True
    install = await detect_openclaw(ctx.conn, ctx.config.openclaw_home)
    if install:
        print(f"✓ OpenClaw {install.version or '(unknown version)'} ({install.bin})")
    else:
        print("✗ OpenClaw not found in PATH")
        ok = False

    server = ctx.registry.get_local_server()
    if server is None:
        print("✗ No server registered. Run: claw-pilot init")
        return 1
    print(f"✓ Server registered: {server.hostname} ({server.openclaw_home})")
    print(f"✓ Service manager: {ctx.service_manager.name}")

    instances = [ctx.registry.require_instance(args.slug)] if args.slug else ctx.registry.list_instances()
    if not instances:
        print("No instances registered.")
        return 0 if ok else 1

    checker = ctx.health()
    for inst in instances:
        print(f"\nInstance: {inst.slug}")
        status = await checker.check(inst.slug)
        if status.healthy:
            print(f"  ✓ Gateway: healthy (port {inst.port})")
        else:
            print(f"  ✗ Gateway: {status.gateway} (port {inst.port})")
            ok = False
        if status.service == "active":
            print(f"  ✓ Service: active ({inst.service_unit})")
        else:
            print(f"  ✗ Service: {status.service} ({inst.service_unit})")
            ok = False
        if await ctx.conn.exists(inst.config_path):
            print("  ✓ Config: found")
        else:
            print(f"  ✗ Config: missing ({inst.config_path})")
            ok = False
        env_path = env_file_path(inst.state_dir)
        if await ctx.conn.exists(env_path):
            token = await read_gateway_token(ctx.conn, inst.state_dir)
            if token:
                print(f"  ✓ .env: found (token {mask_secret(token)})")
            else:
                print("  ⚠ .env: found, no gateway token")
        else:
            print(f"  ✗ .env: missing ({env_path})")
            ok = False
        if status.agent_count:
            print(f"  ✓ Agents: {status.agent_count} registered")
        else:
            print("  ⚠ Agents: none registered")
        if status.telegram and status.telegram != "not_configured":
            print(f"  {'✓' if status.telegram == 'connected' else '⚠'} Telegram: {status.telegram}")

    print()
    print("✓ All checks passed." if ok else "⚠ Some checks failed. Review the output above.")
    return 0 if ok else 1


async def cmd_logs(ctx: PilotContext, args: argparse.Namespace) -> int:
    if not 1 <= args.lines <= MAX_LOG_LINES:
        raise PilotError(f"Invalid --lines value: {args.lines} (expected 1-{MAX_LOG_LINES})", "INVALID_ARGUMENT")
    instance = ctx.registry.require_instance(args.slug)
    log_path = f"{instance.state_dir}/logs/gateway.log"
    result = await ctx.conn.exec("tail", ["-n", str(args.lines), log_path])
    if not result.ok:
        print(f"(no log file found at {log_path})")
        return 0
    print(result.stdout, end="")
    return 0


async def cmd_token(ctx: PilotContext, args: argparse.Namespace) -> int:
    instance = ctx.registry.require_instance(args.slug)
    if args.rotate:
        token = generate_gateway_token()
        await write_gateway_token(ctx.conn, instance.state_dir, token, mode=ctx.config.secret_file_mode)
        ctx.registry.log_event(args.slug, "token_rotated")
        print(f"✓ New gateway token for {args.slug}: {mask_secret(token)}")
        print(f"  Restart to apply: claw-pilot restart {args.slug}")
        return 0
    token = await read_gateway_token(ctx.conn, instance.state_dir)
    if not token:
        raise PilotError(
            f"Gateway token not found in {env_file_path(instance.state_dir)}",
            "TOKEN_NOT_FOUND",
        )
    url = f"http://localhost:{instance.port}/#token={token}"
    if args.url:
        print(url)
        return 0
    print(f'Gateway token for "{args.slug}":')
    print(f"  {token}")
    print("Control UI URL (with auto-login):")
    print(f"  {url}")
    return 0


COMMANDS: dict[str, Callable[[PilotContext, argparse.Namespace], Awaitable[int]]] = {
    "init": cmd_init,
    "list": cmd_list,
    "status": cmd_status,
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "destroy": cmd_destroy,
    "doctor": cmd_doctor,
    "logs": cmd_logs,
    "token": cmd_token,
}


# ── Entry points ─────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="claw-pilot", description="Manage local OpenClaw gateway instances")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Initialize the registry and adopt existing instances")
    p.add_argument("--yes", action="store_true", help="Adopt everything without prompting")

    p = sub.add_parser("list", help="List instances with health")
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("status", help="Health of one instance")
    p.add_argument("slug")
    p.add_argument("--json", action="store_true")

    for name in ("start", "stop", "restart"):
        p = sub.add_parser(name, help=f"{name.capitalize()} an instance")
        p.add_argument("slug")

    p = sub.add_parser("destroy", help="Tear an instance down completely")
    p.add_argument("slug")
    p.add_argument("--yes", action="store_true", help="Skip confirmation")

    p = sub.add_parser("doctor", help="Diagnose the host and instances")
    p.add_argument("slug", nargs="?")

    p = sub.add_parser("logs", help="Show gateway logs")
    p.add_argument("slug")
    p.add_argument("-n", "--lines", type=int, default=50)

    p = sub.add_parser("token", help="Show the gateway token")
    p.add_argument("slug")
    p.add_argument("--url", action="store_true", help="Print the Control UI URL only")
    p.add_argument("--rotate", action="store_true", help="Write a fresh token to the .env file")

    p = sub.add_parser("dashboard", help="Serve the dashboard API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=None)

    return parser


async def run(
    args: argparse.Namespace,
    config: PilotConfig | None = None,
    conn: ServerConnection | None = None,
) -> int:
    """Run one parsed command; returns the process exit code."""
    try:
        async with open_context(config, conn) as ctx:
            return await COMMANDS[args.command](ctx, args)
    except PilotError as e:
        logger.debug("%s failed: %s (%s)", args.command, e.message, e.code)
        print(f"✗ {e.message}", file=sys.stderr)
        return 1


def run_dashboard(config: PilotConfig, host: str, port: int | None) -> int:
    uvicorn.run(create_app(config), host=host, port=port or config.dashboard_port, log_config=None)
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    config = PilotConfig()
    try:
        if args.command == "dashboard":
            code = run_dashboard(config, args.host, args.port)
        else:
            with correlation_scope():
                logger.debug("claw-pilot %s", args.command)
                code = asyncio.run(run(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
