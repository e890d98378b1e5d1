"""
Migration manager: the facade wiring every migration component around one
target store.

The manager is constructed explicitly, with its collaborators passed in, so
several stores (or test doubles) can be managed side by side::

    ledger = HistoryLedger("history.json")
    manager = MigrationManager(executor, ledger, backup_dir="backups")
    manager.register(seal(migration_set))
    results = await manager.migrate("1.2.0")

:meth:`MigrationManager.open` builds a manager for a SQLite store from
:class:`strata.config.environment.StrataSettings`.

Callers must serialize operations against one store; the manager does not
lock.
"""

import json
from pathlib import Path
from typing import Any

from strata.config.environment import StrataSettings
from strata.config.logging_config import get_logger
from strata.migrations.backup import BackupManager
from strata.migrations.exceptions import DependencyNotFoundError
from strata.migrations.executor import MigrationExecutor
from strata.migrations.ledger import HistoryLedger
from strata.migrations.loader import discover
from strata.migrations.models import (
    BackupOptions,
    BackupRecord,
    Compression,
    DataValidationRule,
    ErrorHandling,
    ExecutionOptions,
    ExecutionPlan,
    ExecutionResult,
    ValidationSummary,
    VersionedMigrationSet,
    utcnow,
    version_key,
)
from strata.migrations.registry import MigrationRegistry
from strata.migrations.resolver import DependencyResolver
from strata.migrations.rollback import RollbackCoordinator
from strata.migrations.statement_executor import SQLiteStatementExecutor, StatementExecutor
from strata.migrations.validation import ValidationEngine

log = get_logger(__name__)

RECENT_RESULTS = 10


class MigrationManager:
    """Single entry point for registering, planning, applying, rolling back
    and restoring migrations against one target store.

    Args:
        executor: Statement executor for the target store
        ledger: History ledger for the store
        backup_dir: Directory for backup artifacts
        backup_compression: Default backup compression
        backup_retention_days: Default backup retention window
        backup_timeout: Deadline for taking a backup
        restore_timeout: Deadline for replaying a backup
        rollback_timeout: Deadline for a whole-set rollback script
        retry_attempts: Attempts for steps with the ``retry`` policy
        retry_delay: Base delay between retries
        retry_exhausted_policy: Behaviour of a ``retry`` step after its last attempt
    """

    def __init__(
        self,
        executor: StatementExecutor,
        ledger: HistoryLedger,
        backup_dir: Path | str,
        backup_compression: Compression = Compression.GZIP,
        backup_retention_days: int = 30,
        backup_timeout: float = 600.0,
        restore_timeout: float = 300.0,
        rollback_timeout: float = 300.0,
        retry_attempts: int = 3,
        retry_delay: float = 0.5,
        retry_exhausted_policy: ErrorHandling = ErrorHandling.FAIL,
    ):
        self.statement_executor = executor
        self.ledger = ledger
        self.registry = MigrationRegistry(ledger)
        self.resolver = DependencyResolver(self.registry)
        self.backups = BackupManager(
            executor,
            ledger,
            backup_dir,
            default_compression=backup_compression,
            retention_days=backup_retention_days,
            backup_timeout=backup_timeout,
            restore_timeout=restore_timeout,
        )
        self.executor = MigrationExecutor(
            self.registry,
            ledger,
            executor,
            self.backups,
            retry_attempts=retry_attempts,
            retry_delay=retry_delay,
            retry_exhausted_policy=retry_exhausted_policy,
        )
        self.rollbacks = RollbackCoordinator(
            self.registry,
            ledger,
            executor,
            self.backups,
            rollback_timeout=rollback_timeout,
        )
        self.validation = ValidationEngine(executor)

    @classmethod
    async def open(cls, settings: StrataSettings) -> "MigrationManager":
        """Connect to the configured SQLite store and build a manager for it."""
        executor = await SQLiteStatementExecutor.connect(settings.db_path.expanduser())
        log.info(f"Using SQLite database: {settings.db_path}")
        return cls(
            executor,
            HistoryLedger(settings.ledger_path.expanduser()),
            settings.backup_dir.expanduser(),
            backup_compression=Compression(settings.backup_compression),
            backup_retention_days=settings.backup_retention_days,
            backup_timeout=settings.backup_timeout,
            restore_timeout=settings.restore_timeout,
            rollback_timeout=settings.rollback_timeout,
            retry_attempts=settings.retry_attempts,
            retry_delay=settings.retry_delay,
            retry_exhausted_policy=ErrorHandling(settings.retry_exhausted_policy),
        )

    async def close(self) -> None:
        await self.statement_executor.close()

    async def __aenter__(self) -> "MigrationManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Registration and planning
    # -------------------------------------------------------------------------

    def register(self, migration_set: VersionedMigrationSet, force: bool = False) -> None:
        self.registry.register(migration_set, force=force)

    def register_all(self, migration_sets: list[VersionedMigrationSet]) -> None:
        """Register sets in an order that satisfies their dependencies.

        Raises:
            DependencyNotFoundError: If a dependency is neither registered nor
                among ``migration_sets``
        """
        remaining = sorted(migration_sets, key=lambda s: version_key(s.version))
        while remaining:
            ready = [s for s in remaining if all(dep in self.registry for dep in s.dependencies)]
            if not ready:
                blocked = remaining[0]
                missing = next(dep for dep in blocked.dependencies if dep not in self.registry)
                raise DependencyNotFoundError(
                    f"Dependency '{missing}' not found for version '{blocked.version}'",
                    migration_version=blocked.version,
                    dependency=missing,
                )
            for migration_set in ready:
                self.registry.register(migration_set)
            remaining = [s for s in remaining if s not in ready]

    def load_directory(self, migrations_dir: Path | str) -> list[VersionedMigrationSet]:
        """Discover set files in ``migrations_dir`` and register them."""
        migration_sets = discover(migrations_dir)
        self.register_all(migration_sets)
        log.info(f"Registered {len(migration_sets)} migration set(s) from {migrations_dir}")
        return migration_sets

    def plan(self, target: str) -> ExecutionPlan:
        return self.resolver.plan(target)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, version: str, options: ExecutionOptions | None = None) -> ExecutionResult:
        return await self.executor.execute(version, options)

    async def migrate(
        self,
        target: str | None = None,
        options: ExecutionOptions | None = None,
    ) -> list[ExecutionResult]:
        """Apply every pending set needed to reach ``target``.

        With no target, every registered set is brought up to date. Sets
        are applied in plan order, applied ones are skipped, and the run
        stops after the first unsuccessful result.

        Returns:
            One result per attempted set
        """
        options = options or ExecutionOptions()
        if target is None:
            targets = [s.version for s in self.registry.list_all()]
        else:
            targets = [target]

        ordered: list[str] = []
        for version in targets:
            for planned in self.plan(version).versions:
                if planned not in ordered:
                    ordered.append(planned)

        pending = [v for v in ordered if not self.ledger.is_applied(v)]
        if not pending:
            log.info("No pending migrations")
            return []

        log.info(f"Found {len(pending)} pending migration(s)")
        simulated: set[str] = set()
        results = []
        for version in pending:
            result = await self.executor.execute(version, options, assume_applied=simulated)
            results.append(result)
            if not result.success:
                log.error(f"Stopping after failed migration {version}")
                break
            if options.dry_run:
                simulated.add(version)
        return results

    async def rollback(self, version: str, reason: str = "", raise_on_failure: bool = False) -> ExecutionResult:
        return await self.rollbacks.rollback(version, reason, raise_on_failure=raise_on_failure)

    # -------------------------------------------------------------------------
    # Backups and validation
    # -------------------------------------------------------------------------

    async def create_backup(self, version: str, options: BackupOptions | None = None) -> BackupRecord:
        return await self.backups.create_backup(version, options)

    async def restore(self, backup_id: str) -> ExecutionResult:
        return await self.backups.restore(backup_id)

    def list_backups(self) -> list[BackupRecord]:
        return self.backups.list_backups()

    def purge_expired_backups(self) -> list[str]:
        return self.backups.purge_expired()

    async def run_validation(self, rules: list[DataValidationRule]) -> ValidationSummary:
        return await self.validation.run_rules(rules)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Summarize the registry and the ledger.

        Returns:
            Dictionary with:
            - total: Number of registered sets
            - applied / pending: Registered versions by state
            - failed: Number of unsuccessful executions in history
            - recent: The ten most recent results, newest first
            - average_duration: Mean duration of recorded executions in seconds
            - success_rate: Percentage (0-100) of successful executions;
              0.0 when the history is empty
            - backups: Number of catalogued backups
            - last_updated: When the ledger was last written
        """
        history = self.ledger.history
        successes = sum(1 for r in history if r.success)
        return {
            "total": len(self.registry),
            "applied": [s.version for s in self.registry.list_applied()],
            "pending": [s.version for s in self.registry.list_pending()],
            "failed": len(history) - successes,
            "recent": [r.model_dump(mode="json") for r in reversed(history[-RECENT_RESULTS:])],
            "average_duration": sum(r.duration for r in history) / len(history) if history else 0.0,
            "success_rate": successes / len(history) * 100 if history else 0.0,
            "backups": len(self.ledger.backups),
            "last_updated": self.ledger.last_updated.isoformat() if self.ledger.last_updated else None,
        }

    def export(self) -> str:
        """Export the whole ledger plus the current status as one JSON document."""
        document = {
            "exportedAt": utcnow().isoformat(),
            "status": self.status(),
            **self.ledger.to_document(),
        }
        return json.dumps(document, indent=2)
