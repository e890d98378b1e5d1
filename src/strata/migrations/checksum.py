"""
Integrity fingerprints for migration sets and backup artifacts.

Set checksums are SHA256 digests over the canonical JSON of the set's
declared content (version, steps, description). Canonical means sorted keys,
no insignificant whitespace and steps dumped in JSON mode, so the same
content always yields the same digest regardless of how it was authored.
"""

import hashlib
import json
from pathlib import Path
from typing import Iterable

from strata.migrations.models import MigrationStep, VersionedMigrationSet


def compute_set_checksum(version: str, steps: Iterable[MigrationStep], description: str) -> str:
    """Compute the SHA256 fingerprint of a migration set's declared content.

    Args:
        version: Version identifier of the set
        steps: Ordered steps of the set
        description: Human-readable description

    Returns:
        SHA256 hex digest
    """
    payload = {
        "version": version,
        "steps": [step.model_dump(mode="json") for step in steps],
        "description": description,
    }
    content = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def checksum_of(migration_set: VersionedMigrationSet) -> str:
    return compute_set_checksum(migration_set.version, migration_set.steps, migration_set.description)


def seal(migration_set: VersionedMigrationSet) -> VersionedMigrationSet:
    """Return a copy of the set with its checksum computed from its content."""
    return migration_set.model_copy(update={"checksum": checksum_of(migration_set)})


def compute_bytes_checksum(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def compute_file_checksum(file_path: Path) -> str:
    """Compute SHA256 checksum of a stored artifact.

    Args:
        file_path: Path to the artifact

    Returns:
        SHA256 hex digest of the file's bytes
    """
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()
