"""Configuration management with validation.

All settings have safe defaults and are validated at load time so that a
bad value fails the run before any remote command is issued.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any


class LogFormat(str, Enum):
    """Supported log output formats."""

    TEXT = "text"
    JSON = "json"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_FILE = ".settle/state.json"
DEFAULT_HOSTS_FILE = "hosts.yaml"
DEFAULT_RESOURCES_DIR = "."

DEFAULT_COMMAND_TIMEOUT_SECONDS = 60
MIN_COMMAND_TIMEOUT_SECONDS = 1
MAX_COMMAND_TIMEOUT_SECONDS = 3600

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5
MIN_CONNECT_TIMEOUT_SECONDS = 1
MAX_CONNECT_TIMEOUT_SECONDS = 300

DEFAULT_SSH_PORT = 22

# Security constraints - enforced limits on declaration files
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max per file
MAX_ENTRIES_PER_FILE = 1000
MAX_NAME_LENGTH = 255
MAX_KEY_FILE_SIZE_BYTES = 10240

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Runtime configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Paths
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))
    hosts_file: Path = field(default_factory=lambda: Path(DEFAULT_HOSTS_FILE))
    resources_dir: Path = field(default_factory=lambda: Path(DEFAULT_RESOURCES_DIR))

    # Timing
    command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS
    connect_timeout_seconds: int = DEFAULT_CONNECT_TIMEOUT_SECONDS

    # Behavior
    prune_state: bool = True
    strict_host_keys: bool = False

    # Logging
    log_format: LogFormat = LogFormat.TEXT
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_COMMAND_TIMEOUT_SECONDS
            <= self.command_timeout_seconds
            <= MAX_COMMAND_TIMEOUT_SECONDS
        ):
            errors.append(
                f"SETTLE_COMMAND_TIMEOUT must be between {MIN_COMMAND_TIMEOUT_SECONDS} "
                f"and {MAX_COMMAND_TIMEOUT_SECONDS} seconds"
            )

        if not (
            MIN_CONNECT_TIMEOUT_SECONDS
            <= self.connect_timeout_seconds
            <= MAX_CONNECT_TIMEOUT_SECONDS
        ):
            errors.append(
                f"SETTLE_CONNECT_TIMEOUT must be between {MIN_CONNECT_TIMEOUT_SECONDS} "
                f"and {MAX_CONNECT_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"SETTLE_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if self.state_file.exists() and self.state_file.is_dir():
            errors.append(f"State file path is a directory: {self.state_file}")

        if self.resources_dir.exists() and not self.resources_dir.is_dir():
            errors.append(f"Resources path is not a directory: {self.resources_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a copy with non-None overrides applied (CLI flags win over env)."""
        values = {key: value for key, value in overrides.items() if value is not None}
        if not values:
            return self
        return replace(self, **values)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            SETTLE_STATE_FILE: Path of the persisted state document
                (default: .settle/state.json)
            SETTLE_HOSTS_FILE: Host inventory file (default: hosts.yaml)
            SETTLE_RESOURCES_DIR: Directory holding resource declarations (default: .)
            SETTLE_COMMAND_TIMEOUT: Per-command read timeout in seconds (default: 60)
            SETTLE_CONNECT_TIMEOUT: SSH connect timeout in seconds (default: 5)
            SETTLE_PRUNE_STATE: Drop state of undeclared resources after apply
                (default: true)
            SETTLE_STRICT_HOST_KEYS: Verify host keys against known_hosts
                (default: false)
            SETTLE_LOG_FORMAT: One of text, json (default: text)
            SETTLE_LOG_LEVEL: Logging level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.TEXT
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"SETTLE_LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            state_file=Path(os.environ.get("SETTLE_STATE_FILE", DEFAULT_STATE_FILE)),
            hosts_file=Path(os.environ.get("SETTLE_HOSTS_FILE", DEFAULT_HOSTS_FILE)),
            resources_dir=Path(os.environ.get("SETTLE_RESOURCES_DIR", DEFAULT_RESOURCES_DIR)),
            command_timeout_seconds=get_int(
                "SETTLE_COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT_SECONDS
            ),
            connect_timeout_seconds=get_int(
                "SETTLE_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_SECONDS
            ),
            prune_state=get_bool("SETTLE_PRUNE_STATE", True),
            strict_host_keys=get_bool("SETTLE_STRICT_HOST_KEYS", False),
            log_format=get_log_format(os.environ.get("SETTLE_LOG_FORMAT")),
            log_level=os.environ.get("SETTLE_LOG_LEVEL", "INFO").upper(),
        )
