"""Configuration validation utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.utcnow())

    scripts_dir = settings.get_scripts_dir()
    if not scripts_dir.is_dir():
        _warn(
            result,
            f"Scripts directory {scripts_dir} does not exist.",
            "Set SCRIPTS_DIR to the directory holding the downloaded scripts; local runs will be rejected until it exists.",
        )

    websocket_path = (settings.websocket_path or "").strip()
    if not websocket_path.startswith("/"):
        _error(
            result,
            "WEBSOCKET_PATH must be an absolute path.",
            "Use a value such as /ws/script-execution.",
        )

    if settings.terminal_cols <= 0 or settings.terminal_rows <= 0:
        _error(
            result,
            "TERMINAL_COLS and TERMINAL_ROWS must be positive.",
            "Leave them unset to use the default 80x24 geometry.",
        )

    if settings.output_log_limit <= 0:
        _error(
            result,
            "OUTPUT_LOG_LIMIT must be a positive number of characters.",
        )

    if not settings.ssh_strict_host_keys:
        _warn(
            result,
            "SSH_STRICT_HOST_KEYS is disabled; unknown host keys are accepted automatically.",
            "Enable SSH_STRICT_HOST_KEYS once the hypervisors are listed in known_hosts.",
        )

    if settings.update_settle_seconds < 0 or settings.backup_settle_seconds < 0:
        _error(
            result,
            "Workflow settle delays cannot be negative.",
        )

    set_config_validation_result(result)
    return result
