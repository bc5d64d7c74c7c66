"""Configuration management using Pydantic settings."""

from pathlib import Path
from typing import Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


# Reserved WebSocket route owned by the execution gateway. Everything else on
# the listening port belongs to the host application.
DEFAULT_WEBSOCKET_PATH = "/ws/script-execution"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "PVE Scripts Server"
    app_version: str = "0.1.0"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 3000

    # Script execution settings
    scripts_dir: str = "scripts"  # Relative paths resolve against the working directory
    websocket_path: str = DEFAULT_WEBSOCKET_PATH
    output_log_limit: int = 1000  # Characters of output kept for the persisted log

    # Local pseudo-terminal settings
    terminal_name: str = "xterm-256color"
    terminal_cols: int = 80
    terminal_rows: int = 24

    # SSH connection settings
    ssh_connect_timeout: float = 15.0  # seconds to establish the TCP/SSH handshake
    ssh_keepalive_interval: int = 30  # seconds between transport keepalives (0 disables)
    ssh_strict_host_keys: bool = False  # Reject hosts missing from known_hosts
    remote_script_dir: str = "/tmp/pve-scripts"  # Upload target for remote script runs

    # Workflow timing
    update_settle_seconds: float = 4.0  # Delay before sending "update" into the guest shell
    backup_settle_seconds: float = 1.0  # Pause between a pre-update backup and the update

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_scripts_dir(self) -> Path:
        """Return the absolute scripts directory."""
        return Path(self.scripts_dir).expanduser().resolve()


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .config_validation import ConfigValidationResult

# Cache of the configuration validation result so it can be reused across modules
_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
