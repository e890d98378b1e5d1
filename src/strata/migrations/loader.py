"""
Migration set files.

Migration sets are authored as YAML documents, one set per file, in a
migrations directory::

    version: "1.0.0"
    description: Create users table
    risk_level: low
    backup_required: true
    steps:
      - id: create_users
        kind: schema
        script: CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL);
        rollback_script: DROP TABLE IF EXISTS users;
    rollback_script: DROP TABLE IF EXISTS users;
    validation_queries:
      - SELECT name FROM sqlite_master WHERE name = 'users'
    checksum: 5f1c...

The checksum seals the file's content; ``strata migrations seal`` recomputes
it after an edit. Validation rule files hold a ``rules`` list.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from strata.config.logging_config import get_logger
from strata.migrations.checksum import seal
from strata.migrations.exceptions import MigrationDiscoveryError
from strata.migrations.models import (
    DataValidationRule,
    MigrationStep,
    VersionedMigrationSet,
    version_key,
)

log = get_logger(__name__)

SET_FILE_PATTERNS = ("*.yaml", "*.yml")


def _read_yaml(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise MigrationDiscoveryError(f"Failed to read {path}: {e}") from e


def load_set(path: Path | str) -> VersionedMigrationSet:
    """Load one migration set file.

    Raises:
        MigrationDiscoveryError: If the file is unreadable or not a valid set
    """
    path = Path(path)
    data = _read_yaml(path)
    if not isinstance(data, dict):
        raise MigrationDiscoveryError(f"Migration file {path} must contain a mapping")
    try:
        return VersionedMigrationSet.model_validate(data)
    except ValidationError as e:
        raise MigrationDiscoveryError(
            f"Invalid migration file {path}: {e}",
            migration_version=data.get("version"),
        ) from e


def discover(migrations_dir: Path | str) -> list[VersionedMigrationSet]:
    """Load every set file in ``migrations_dir``, sorted by version.

    Files starting with ``_`` or ``.`` are ignored.

    Raises:
        MigrationDiscoveryError: If the directory is missing, a file is
            malformed, or two files declare the same version
    """
    migrations_dir = Path(migrations_dir)
    if not migrations_dir.is_dir():
        raise MigrationDiscoveryError(f"Migrations directory not found: {migrations_dir}")

    files = sorted({p for pattern in SET_FILE_PATTERNS for p in migrations_dir.glob(pattern)})
    migration_sets: list[VersionedMigrationSet] = []
    seen: dict[str, Path] = {}
    for path in files:
        if path.name.startswith(("_", ".")):
            continue
        migration_set = load_set(path)
        if migration_set.version in seen:
            raise MigrationDiscoveryError(
                f"Duplicate migration version {migration_set.version} in {path} and {seen[migration_set.version]}",
                migration_version=migration_set.version,
            )
        seen[migration_set.version] = path
        migration_sets.append(migration_set)

    log.debug(f"Discovered {len(migration_sets)} migration set(s) in {migrations_dir}")
    return sorted(migration_sets, key=lambda s: version_key(s.version))


def load_rules(path: Path | str) -> list[DataValidationRule]:
    """Load validation rules from a YAML file.

    The file holds either a list of rules or a mapping with a ``rules`` list.

    Raises:
        MigrationDiscoveryError: If the file is unreadable or a rule is invalid
    """
    path = Path(path)
    data = _read_yaml(path)
    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list):
        raise MigrationDiscoveryError(f"Rules file {path} must contain a list of rules")
    try:
        return [DataValidationRule.model_validate(rule) for rule in data]
    except ValidationError as e:
        raise MigrationDiscoveryError(f"Invalid rule in {path}: {e}") from e


def dump_set(migration_set: VersionedMigrationSet) -> str:
    data = migration_set.model_dump(mode="json", exclude_defaults=True)
    # Keep the fields that identify the set even when they hold defaults
    data["version"] = migration_set.version
    data["description"] = migration_set.description
    data["checksum"] = migration_set.checksum
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def render_template(version: str, description: str) -> str:
    """Render a new, sealed migration set file with one placeholder step."""
    migration_set = VersionedMigrationSet(
        version=version,
        description=description,
        steps=[
            MigrationStep(
                id="step_1",
                script="-- Write the change script for this step\nSELECT 1;",
            )
        ],
    )
    return dump_set(seal(migration_set))


def seal_file(path: Path | str) -> VersionedMigrationSet:
    """Recompute the checksum of a set file in place and return the sealed set."""
    path = Path(path)
    sealed = seal(load_set(path))
    path.write_text(dump_set(sealed), encoding="utf-8")
    log.info(f"Sealed {path} ({sealed.checksum[:12]})")
    return sealed
