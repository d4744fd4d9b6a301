"""Configuration snapshot loading with validation.

The snapshot is split over three YAML files in the configs directory:
config.yaml (optional, global knobs), repos.yaml and stacks.yaml (required).
All file reads enforce a size limit and all content is validated at the
boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import ControllerConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
REPOS_FILE = "repos.yaml"
STACKS_FILE = "stacks.yaml"


class ConfigLoadError(Exception):
    """Raised when the configuration snapshot cannot be loaded or validated."""

    pass


def _read_mapping(path: Path, required: bool) -> dict[str, Any]:
    """Read a YAML file that must contain a mapping.

    Args:
        path: File to read.
        required: Whether a missing file is an error.

    Returns:
        Parsed mapping, or an empty dict for an absent optional file.

    Raises:
        ConfigLoadError: If the file cannot be read or is not a mapping.
    """
    try:
        exists = path.exists()
        file_size = path.stat().st_size if exists else 0
    except OSError as e:
        raise ConfigLoadError(f"Failed to stat config file {path}: {e}") from e

    if not exists:
        if required:
            raise ConfigLoadError(f"Config file not found: {path}")
        logger.info("Optional config file not found, using defaults", extra={"path": str(path)})
        return {}

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigLoadError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigLoadError(f"Failed to read config file {path}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Config file must contain a YAML mapping: {path}")
    return data


def _format_validation_error(e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}" if loc else f"  - {error['msg']}")
    return "\n".join(errors)


def load_configs(
    configs_path: Path, concurrency_override: int | None = None
) -> ControllerConfig:
    """Load and validate the configuration snapshot.

    Repos and stacks are read fresh on every call, so entries removed from
    the files disappear from the new snapshot.

    Args:
        configs_path: Directory containing config.yaml, repos.yaml, stacks.yaml.
        concurrency_override: Worker count from SWARMCD_CONCURRENCY; wins over the file.

    Returns:
        Validated, immutable configuration snapshot.

    Raises:
        ConfigLoadError: If any file is missing, unreadable or invalid.
    """
    logger.info("Loading configuration", extra={"configs_path": str(configs_path)})

    data = _read_mapping(configs_path / CONFIG_FILE, required=False)
    # Repos and stacks only come from their own files
    data.pop("repos", None)
    data.pop("stacks", None)
    data["repos"] = _read_mapping(configs_path / REPOS_FILE, required=True)
    data["stacks"] = _read_mapping(configs_path / STACKS_FILE, required=True)

    if concurrency_override is not None:
        data["concurrency"] = concurrency_override

    try:
        snapshot = ControllerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigLoadError(
            f"Validation failed for configuration in {configs_path}:\n"
            f"{_format_validation_error(e)}"
        ) from e

    logger.info(
        "Loaded configuration",
        extra={
            "repos": len(snapshot.repos),
            "stacks": len(snapshot.stacks),
            "update_interval": snapshot.update_interval,
            "concurrency": snapshot.concurrency,
        },
    )
    return snapshot
