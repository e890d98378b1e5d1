"""Utility functions for reading configuration files."""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Any, Dict

import yaml

SETTINGS_FILE = "settings.yaml"
SETTINGS_ENV_VAR = "STRATA_SETTINGS"
MISSING_MESSAGE = "Missing required configuration value: {}"
NOT_GIVEN = object()


def get_system_file_path(filename: str) -> Path:
    """Return the path to the configuration file for the current OS."""
    os_name = platform.system()
    if os_name in {"Linux", "Darwin"}:
        return Path.home() / ".config" / "strata" / filename
    elif os_name == "Windows":
        appdata = os.getenv("APPDATA")
        if appdata is not None:
            return Path(appdata) / "strata" / filename
        return Path("data") / filename
    return Path("data") / filename


def get_system_data_path(filename: str) -> Path:
    """Return the path to the data folder for the current OS."""
    os_name = platform.system()
    if os_name in {"Linux", "Darwin"}:
        return Path.home() / ".local" / "share" / "strata" / filename
    elif os_name == "Windows":
        appdata = os.getenv("LOCALAPPDATA")
        if appdata is not None:
            return Path(appdata) / "strata" / filename
        return Path("data") / filename
    return Path("data") / filename


def get_settings_path() -> Path:
    """Return the settings file location, honouring ``STRATA_SETTINGS``."""
    override = os.environ.get(SETTINGS_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return get_system_file_path(SETTINGS_FILE)


def load_settings(path: Path | None = None) -> Dict[str, Any]:
    """Load settings from a YAML file, returning an empty dict when absent."""
    settings_file = path or get_settings_path()
    if not settings_file.exists():
        return {}
    with open(settings_file, "r") as f:
        settings = yaml.safe_load(f) or {}
    if not isinstance(settings, dict):
        raise ValueError(f"Settings file {settings_file} must contain a mapping")
    return settings


def get_value(
    key: str,
    settings: Dict[str, Any],
    default_env: Dict[str, Any],
    default: Any = NOT_GIVEN,
) -> Any:
    """Retrieve a configuration value from the environment, settings, or defaults.

    Environment variables (``STRATA_<KEY>`` first, then ``<KEY>``) take
    precedence over the settings file.
    """
    value = os.environ.get(f"STRATA_{key}") or os.environ.get(key)
    if value is None or str(value) == "":
        value = settings.get(key)

    if value is None:
        value = default_env.get(key, default)

    if value is not NOT_GIVEN:
        return value
    raise KeyError(MISSING_MESSAGE.format(key))
