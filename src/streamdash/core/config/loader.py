"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from streamdash.utils.project import find_project_root

from .models import StreamdashConfig

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILENAME = ".streamdash.json"


class ConfigError(Exception):
    """Raised when the merged configuration is invalid."""

    pass


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/streamdash/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "streamdash" / "config.json"


def get_project_config_path(project_root: Path) -> Path:
    """Get path to the project configuration file."""
    return project_root / PROJECT_CONFIG_FILENAME


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    Nested dicts are merged, not replaced.

    Example:
        >>> base = {"a": 1, "b": {"x": 10, "y": 20}}
        >>> override = {"b": {"y": 30, "z": 40}, "c": 3}
        >>> deep_merge(base, override)
        {'a': 1, 'b': {'x': 10, 'y': 30, 'z': 40}, 'c': 3}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open() as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning("Ignoring config at %s: top level is not an object", path)
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in ("false", "0", "no", "off", "")


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        STREAMDASH_PROJECT_ROOT - overrides project_root
        STREAMDASH_PROJECT_NAME - overrides project_name
        STREAMDASH_DATABASE_PATH - overrides database_path
        STREAMDASH_BASE_BRANCH - overrides base_branch
        STREAMDASH_API_PORT - overrides api.port
        STREAMDASH_API_ENABLED - overrides api.enabled
        STREAMDASH_SCAN_INTERVAL - overrides scanner.interval_seconds

    Raises:
        ConfigError: If a numeric override cannot be parsed
    """
    result = config_dict.copy()

    for env_name, key in (
        ("STREAMDASH_PROJECT_ROOT", "project_root"),
        ("STREAMDASH_PROJECT_NAME", "project_name"),
        ("STREAMDASH_DATABASE_PATH", "database_path"),
        ("STREAMDASH_BASE_BRANCH", "base_branch"),
    ):
        if value := os.environ.get(env_name):
            result[key] = value

    if port_str := os.environ.get("STREAMDASH_API_PORT"):
        try:
            port = int(port_str)
        except ValueError as e:
            raise ConfigError(
                f"Invalid STREAMDASH_API_PORT: {port_str!r}. Must be between 1-65535"
            ) from e
        result["api"] = {**result.get("api", {}), "port": port}

    if enabled_str := os.environ.get("STREAMDASH_API_ENABLED"):
        result["api"] = {**result.get("api", {}), "enabled": _parse_bool(enabled_str)}

    if interval_str := os.environ.get("STREAMDASH_SCAN_INTERVAL"):
        try:
            interval = float(interval_str)
        except ValueError as e:
            raise ConfigError(f"Invalid STREAMDASH_SCAN_INTERVAL: {interval_str!r}") from e
        result["scanner"] = {**result.get("scanner", {}), "interval_seconds": interval}

    return result


def load_config(project_root: Path | None = None) -> StreamdashConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (STREAMDASH_*)
        2. Project config (.streamdash.json)
        3. User config (~/.config/streamdash/config.json)
        4. Hardcoded defaults

    Args:
        project_root: Project root (defaults to the discovered root of cwd)

    Returns:
        Validated StreamdashConfig instance

    Raises:
        ConfigError: If the merged config fails validation
    """
    env_root = os.environ.get("STREAMDASH_PROJECT_ROOT")
    if project_root is None:
        if env_root:
            project_root = Path(env_root)
        else:
            project_root = find_project_root() or Path.cwd()

    merged: dict[str, Any] = {"project_root": str(project_root)}

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    if project_config := load_json_file(get_project_config_path(Path(project_root))):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    try:
        config = StreamdashConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        "Loaded config for %s (db=%s, lock=%s)",
        config.project_name,
        config.database_path,
        config.lock_file_path,
    )
    return config
