"""claw-pilot exceptions. Every error carries a machine-readable ``code``."""


class PilotError(Exception):
    """Base exception for claw_pilot."""

    code = "PILOT_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class InstanceNotFoundError(PilotError):
    """Slug absent from the registry."""

    code = "INSTANCE_NOT_FOUND"

    def __init__(self, slug: str):
        super().__init__(f'Instance "{slug}" not found in registry')
        self.slug = slug


class InstanceAlreadyExistsError(PilotError):
    """Slug already registered."""

    code = "INSTANCE_EXISTS"

    def __init__(self, slug: str):
        super().__init__(f'Instance "{slug}" already exists')
        self.slug = slug


class PortConflictError(PilotError):
    """No free port in range, or the chosen port is occupied."""

    code = "PORT_CONFLICT"

    def __init__(self, port: int | None = None):
        if port is None:
            message = "No free port available in the configured range"
        else:
            message = f"Port {port} is already in use"
        super().__init__(message)
        self.port = port


class GatewayUnhealthyError(PilotError):
    """Service is up at OS level but the gateway never answered /health."""

    code = "GATEWAY_UNHEALTHY"

    def __init__(self, slug: str, port: int):
        super().__init__(f'Gateway for "{slug}" not responding on port {port}')
        self.slug = slug
        self.port = port


class ToolNotFoundError(PilotError):
    """A required external tool (systemctl, launchctl, ...) is missing."""

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool: str):
        super().__init__(f"Required tool not found: {tool}")
        self.tool = tool


class OpenClawNotFoundError(PilotError):
    """The openclaw binary is not installed."""

    code = "OPENCLAW_NOT_FOUND"

    def __init__(self):
        super().__init__("OpenClaw binary not found. Install it before running claw-pilot.")


class ServiceActionError(PilotError):
    """The service manager rejected a start/stop/restart."""

    code = "SERVICE_ACTION_FAILED"

    def __init__(self, action: str, unit: str, detail: str = ""):
        message = f"{action} {unit} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.action = action
        self.unit = unit


class MigrationError(PilotError):
    """A schema migration failed and was rolled back."""

    code = "MIGRATION_FAILED"


class PollTimeoutError(PilotError):
    """A readiness poll hit its deadline."""

    code = "POLL_TIMEOUT"
