"""claw-pilot configuration — all settings from environment (CLAW_PILOT_*)."""

from datetime import date
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PilotConfig(BaseSettings):
    """Runtime configuration for claw-pilot (validated via Pydantic).

    Only host-level defaults live here. The port range used at runtime is
    read from the registry ``config`` table, seeded from these values on
    first initialization.
    """

    model_config = SettingsConfigDict(
        env_prefix="CLAW_PILOT_",
        extra="ignore",
        populate_by_name=True,
    )

    # Registry
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".claw-pilot")
    db_file: str = "registry.db"
    dashboard_token_file: str = "dashboard-token"

    # Managed service layout
    openclaw_home: Path = Field(
        default_factory=Path.home,
        alias="OPENCLAW_HOME",
    )
    state_dir_prefix: str = ".openclaw-"
    legacy_state_dir: str = ".openclaw"
    config_file_name: str = "openclaw.json"
    unit_prefix: str = "openclaw-"
    launchd_label_prefix: str = "ai.openclaw."
    gateway_log_dir: Path = Path("/tmp/openclaw")
    proxy_site_dirs: list[Path] = Field(
        default_factory=lambda: [
            Path("/etc/nginx/sites-enabled"),
            Path("/etc/nginx/sites-available"),
        ]
    )

    # Ports (seed values for the registry config table)
    port_range_start: int = 18789
    port_range_end: int = 18799
    dashboard_port: int = 19000

    # Timeouts (seconds)
    health_check_timeout: float = 5.0
    gateway_ready_timeout: float = 30.0
    poll_interval: float = 1.0
    poll_probe_timeout: float = 2.0
    exec_timeout: float = 60.0

    # Runtime dir
    fallback_uid: int = 1000

    # File modes
    dir_mode: int = 0o700
    secret_file_mode: int = 0o600

    @field_validator(
        "health_check_timeout",
        "gateway_ready_timeout",
        "poll_interval",
        "poll_probe_timeout",
        "exec_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"Timeouts must be positive, got {v}")
        return v

    @model_validator(mode="after")
    def validate_port_range(self) -> "PilotConfig":
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"port_range_start ({self.port_range_start}) exceeds "
                f"port_range_end ({self.port_range_end})"
            )
        return self

    def registry_seed(self) -> dict[str, str]:
        """Values written to the registry config table when it is created."""
        return {
            "port_range_start": str(self.port_range_start),
            "port_range_end": str(self.port_range_end),
            "dashboard_port": str(self.dashboard_port),
        }

    # ── Paths ────────────────────────────────────────────────────────────

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_file

    @property
    def dashboard_token_path(self) -> Path:
        return self.data_dir / self.dashboard_token_file

    def state_dir(self, slug: str) -> Path:
        return self.openclaw_home / f"{self.state_dir_prefix}{slug}"

    def config_path(self, slug: str) -> Path:
        return self.state_dir(slug) / self.config_file_name

    @property
    def legacy_dir(self) -> Path:
        return self.openclaw_home / self.legacy_state_dir

    @property
    def systemd_unit_dir(self) -> Path:
        return self.openclaw_home / ".config" / "systemd" / "user"

    @property
    def launchd_agents_dir(self) -> Path:
        return self.openclaw_home / "Library" / "LaunchAgents"

    def gateway_log_path(self, day: date | None = None) -> Path:
        """Daily gateway log written by openclaw itself."""
        day = day or date.today()
        return self.gateway_log_dir / f"openclaw-{day.isoformat()}.log"
