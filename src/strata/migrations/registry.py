"""
Migration registry: the catalog of every versioned migration set that *can*
be applied.

Registration validates but never executes. Applied/pending views are derived
by cross-referencing the history ledger.
"""

from strata.config.logging_config import get_logger
from strata.migrations.checksum import checksum_of
from strata.migrations.exceptions import (
    ChecksumMismatchError,
    DependencyNotFoundError,
    DuplicateVersionError,
    MigrationNotFoundError,
)
from strata.migrations.ledger import HistoryLedger
from strata.migrations.models import VersionedMigrationSet, version_key

log = get_logger(__name__)


class MigrationRegistry:
    """In-memory catalog of versioned migration sets.

    Example:
        registry = MigrationRegistry(ledger)
        registry.register(seal(migration_set))
        pending = registry.list_pending()
    """

    def __init__(self, ledger: HistoryLedger):
        self._ledger = ledger
        self._sets: dict[str, VersionedMigrationSet] = {}

    def register(self, migration_set: VersionedMigrationSet, force: bool = False) -> None:
        """Add a migration set to the catalog.

        Args:
            migration_set: The set to register
            force: Replace an already registered version

        Raises:
            DuplicateVersionError: If the version exists and ``force`` is False
            DependencyNotFoundError: If a declared dependency is not registered
            ChecksumMismatchError: If the supplied checksum does not match the content
        """
        version = migration_set.version

        if version in self._sets and not force:
            raise DuplicateVersionError(f"Version '{version}' is already registered", migration_version=version)

        for dep in migration_set.dependencies:
            if dep not in self._sets:
                raise DependencyNotFoundError(
                    f"Dependency '{dep}' not found for version '{version}'",
                    migration_version=version,
                    dependency=dep,
                )

        actual = checksum_of(migration_set)
        if actual != migration_set.checksum:
            raise ChecksumMismatchError(
                f"Checksum mismatch for version '{version}'",
                migration_version=version,
                expected_checksum=migration_set.checksum,
                actual_checksum=actual,
            )

        if version in self._sets:
            log.warning(f"Replacing registered migration set {version}")
        self._sets[version] = migration_set
        log.debug(f"Registered migration set {version} ({len(migration_set.steps)} steps)")

    def get(self, version: str) -> VersionedMigrationSet:
        """Return a registered set.

        Raises:
            MigrationNotFoundError: If the version is unknown
        """
        try:
            return self._sets[version]
        except KeyError:
            raise MigrationNotFoundError(
                f"Migration version '{version}' not found", migration_version=version
            ) from None

    def __contains__(self, version: str) -> bool:
        return version in self._sets

    def __len__(self) -> int:
        return len(self._sets)

    def list_all(self) -> list[VersionedMigrationSet]:
        return sorted(self._sets.values(), key=lambda s: version_key(s.version))

    def list_applied(self) -> list[VersionedMigrationSet]:
        return [s for s in self.list_all() if self._ledger.is_applied(s.version)]

    def list_pending(self) -> list[VersionedMigrationSet]:
        return [s for s in self.list_all() if not self._ledger.is_applied(s.version)]
