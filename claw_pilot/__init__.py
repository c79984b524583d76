"""
claw-pilot — supervisor for multiple local OpenClaw gateway instances.

Keeps three sources of truth in step: the SQLite registry, the per-instance
state directories on disk, and the OS service manager (systemd / launchd).

Usage:
    claw-pilot init
    claw-pilot list --json
    claw-pilot start demo1
"""

__version__ = "0.4.0"
