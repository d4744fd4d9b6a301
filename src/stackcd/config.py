"""Process-level settings with validation.

Settings come from environment variables and are validated once at startup.
The per-cycle configuration snapshot (repos, stacks, interval) lives in
config_loader.py and is reloaded between reconciliation cycles.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when process settings validation fails."""

    pass


DEFAULT_CONFIGS_PATH = "."
DEFAULT_DB_PATH = "/data/revisions.db"
DEFAULT_CONCURRENCY = 3
DEFAULT_UPDATE_INTERVAL_SECONDS = 120
DEFAULT_REPOS_PATH = "repos"
DEFAULT_ADDRESS = "0.0.0.0:8080"

# Bounded wait on SQLite internal lock contention (milliseconds)
DB_BUSY_TIMEOUT_MS = 5000

# Guard against huge YAML files being loaded into memory
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024

# Timeouts for external commands (seconds)
GIT_TIMEOUT_SECONDS = 300
DEPLOY_TIMEOUT_SECONDS = 600

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("json", "text")


def parse_concurrency(value: str | None) -> int | None:
    """Parse a raw concurrency override.

    Unparseable values come back as 0 so the scheduler treats them like any
    other non-positive setting: warn and use the default.
    """
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        return 0


@dataclass(frozen=True)
class Settings:
    """Controller settings loaded from environment variables.

    All fields are validated at construction time. Invalid settings raise
    ConfigurationError immediately rather than failing mid-cycle.
    """

    configs_path: Path = field(default_factory=lambda: Path(DEFAULT_CONFIGS_PATH))
    db_path: str = DEFAULT_DB_PATH
    concurrency_override: int | None = None
    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.db_path:
            errors.append("SWARMCD_DB must not be empty")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(
                f"LOG_FORMAT must be one of {list(VALID_LOG_FORMATS)}: {self.log_format}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_value(self) -> int:
        """Numeric logging level."""
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables.

        Environment Variables:
            CONFIGS_PATH: Directory holding config.yaml, repos.yaml, stacks.yaml (default: .)
            SWARMCD_DB: Revision ledger location (default: /data/revisions.db)
            SWARMCD_CONCURRENCY: Overrides the configured worker count
            LOG_LEVEL: Logging level name (default: INFO)
            LOG_FORMAT: "json" or "text" (default: json)
        """
        return cls(
            configs_path=Path(os.environ.get("CONFIGS_PATH") or DEFAULT_CONFIGS_PATH),
            db_path=os.environ.get("SWARMCD_DB") or DEFAULT_DB_PATH,
            concurrency_override=parse_concurrency(os.environ.get("SWARMCD_CONCURRENCY")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json").lower(),
        )
