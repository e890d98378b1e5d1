"""
Environment Configuration Management Module

Centralizes configuration for the migration framework. Values are resolved
from, in order of precedence:

- Environment variables (``STRATA_<KEY>`` or ``<KEY>``, optionally loaded from
  ``.env`` files)
- The settings file (``settings.yaml``, path overridable via ``STRATA_SETTINGS``)
- Built-in defaults

The resolved values are validated into a typed :class:`StrataSettings`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field

from strata.config.settings import get_system_data_path, get_value, load_settings

DEFAULT_ENV: Dict[str, Any] = {
    "DB_PATH": str(get_system_data_path("strata.sqlite3")),
    "MIGRATIONS_DIR": "migrations",
    "BACKUP_DIR": str(get_system_data_path("backups")),
    "LEDGER_PATH": str(get_system_data_path("migration-history.json")),
    "BACKUP_RETENTION_DAYS": 30,
    "BACKUP_COMPRESSION": "gzip",
    "BACKUP_TIMEOUT": 600.0,
    "RESTORE_TIMEOUT": 300.0,
    "ROLLBACK_TIMEOUT": 300.0,
    "RETRY_ATTEMPTS": 3,
    "RETRY_DELAY": 0.5,
    "RETRY_EXHAUSTED_POLICY": "fail",
    "LOG_LEVEL": "INFO",
}


class StrataSettings(BaseModel):
    """Typed view over the resolved configuration."""

    db_path: Path
    migrations_dir: Path
    backup_dir: Path
    ledger_path: Path
    backup_retention_days: int = Field(default=30, ge=1)
    backup_compression: Literal["none", "gzip"] = "gzip"
    backup_timeout: float = Field(default=600.0, gt=0)
    restore_timeout: float = Field(default=300.0, gt=0)
    rollback_timeout: float = Field(default=300.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.5, ge=0)
    retry_exhausted_policy: Literal["fail", "continue"] = "fail"
    log_level: str = "INFO"


def load_dotenv_files(root: Path | None = None) -> None:
    """Load environment variables from .env files based on the current environment."""
    from dotenv import load_dotenv

    project_root = root or Path.cwd()
    env_name = os.environ.get("ENV", "development")

    # Later files override earlier ones only for keys not already set
    env_files = [
        project_root / ".env",
        project_root / f".env.{env_name}",
        project_root / f".env.{env_name}.local",
    ]
    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=False)


class Environment(object):
    """
    Resolves configuration values and caches the settings file.

    Use :meth:`get` for single values and :meth:`settings_model` for the typed
    settings consumed by :class:`strata.migrations.manager.MigrationManager`.
    """

    settings: Dict[str, Any] | None = None

    @classmethod
    def load_settings(cls, path: Path | None = None) -> None:
        """Load .env files and the settings file into the class cache."""
        load_dotenv_files()
        cls.settings = load_settings(path)

    @classmethod
    def clear(cls) -> None:
        cls.settings = None

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        if cls.settings is None:
            cls.load_settings()
        assert cls.settings is not None
        return get_value(key, cls.settings, DEFAULT_ENV, default)

    @classmethod
    def settings_model(cls, **overrides: Any) -> StrataSettings:
        """Build :class:`StrataSettings` from the resolved values.

        Keyword overrides (lower-case field names) win over every other source.
        """
        values = {key.lower(): cls.get(key) for key in DEFAULT_ENV}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return StrataSettings.model_validate(values)
