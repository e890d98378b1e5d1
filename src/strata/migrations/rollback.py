"""
Rollback coordinator: reverses an applied migration set with its whole-set
rollback script.

A rollback is itself protected: a pre-rollback backup is always taken first,
whatever the set's ``backup_required`` flag says, and the set's validation
queries are re-run against the reverted state. Validation failures are
recorded, never answered with another rollback. Every attempt is appended to
the ledger as ``rollback-<version>``.
"""

from strata.config.logging_config import get_logger
from strata.migrations.backup import BackupManager
from strata.migrations.exceptions import BackupError, ErrorCode, RollbackError, RollbackNotAvailableError
from strata.migrations.ledger import ROLLBACK_PREFIX, HistoryLedger
from strata.migrations.models import BackupOptions, ExecutionResult
from strata.migrations.registry import MigrationRegistry
from strata.migrations.statement_executor import StatementExecutor
from strata.migrations.validation import run_validation_queries

log = get_logger(__name__)

PRE_ROLLBACK_PREFIX = "pre-rollback"
DEFAULT_ROLLBACK_TIMEOUT = 300.0


class RollbackCoordinator:
    def __init__(
        self,
        registry: MigrationRegistry,
        ledger: HistoryLedger,
        executor: StatementExecutor,
        backup_manager: BackupManager,
        rollback_timeout: float = DEFAULT_ROLLBACK_TIMEOUT,
    ):
        self._registry = registry
        self._ledger = ledger
        self._executor = executor
        self._backup_manager = backup_manager
        self.rollback_timeout = rollback_timeout

    async def rollback(self, version: str, reason: str = "", raise_on_failure: bool = False) -> ExecutionResult:
        """Run the set's rollback script.

        Args:
            version: Registered version to roll back
            reason: Free-text reason, kept as a warning in the recorded result
            raise_on_failure: Raise RollbackError after recording an
                unsuccessful attempt instead of returning it

        Returns:
            The recorded ExecutionResult with ``target_id`` ``rollback-<version>``

        Raises:
            MigrationNotFoundError: If the version is not registered
            RollbackNotAvailableError: If the set declares no rollback script
            RollbackError: If ``raise_on_failure`` is set and the attempt failed
        """
        migration_set = self._registry.get(version)
        if not migration_set.rollback_script:
            raise RollbackNotAvailableError(
                f"Migration {version} does not declare a rollback script",
                migration_version=version,
            )

        result = ExecutionResult(target_id=f"{ROLLBACK_PREFIX}{version}")
        result.warnings.append(f"Rollback initiated: {reason or 'no reason given'}")
        log.warning(f"Rolling back migration {version}: {reason or 'no reason given'}")

        try:
            backup = await self._backup_manager.create_backup(
                version,
                BackupOptions(
                    id_prefix=PRE_ROLLBACK_PREFIX,
                    description=f"Backup created before rolling back migration {version}",
                ),
            )
            result.rollback_point = backup.id
        except BackupError as e:
            log.error(f"Pre-rollback backup for {version} failed, aborting: {e}")
            result.add_error(ErrorCode.BACKUP_FAILED, str(e))
            return self._record(result, raise_on_failure)

        try:
            stats = await self._executor.execute(migration_set.rollback_script, self.rollback_timeout)
            result.records_processed += stats.records_processed
            result.records_affected += stats.records_affected
        except Exception as e:
            log.error(f"Rollback script for {version} failed: {e}")
            result.add_error(ErrorCode.ROLLBACK_ERROR, f"Rollback failed: {e}")

        result.errors.extend(await run_validation_queries(self._executor, migration_set.validation_queries))
        return self._record(result, raise_on_failure)

    def _record(self, result: ExecutionResult, raise_on_failure: bool) -> ExecutionResult:
        result.finalize()
        self._ledger.append_result(result)
        if result.success:
            log.info(f"{result.target_id} completed in {result.duration:.2f}s")
        else:
            log.error(f"{result.target_id} finished with {len(result.errors)} error(s)")
        if raise_on_failure and not result.success:
            raise RollbackError(
                f"{result.target_id} failed: " + "; ".join(e.message for e in result.errors),
                migration_version=result.target_id.removeprefix(ROLLBACK_PREFIX),
            )
        return result
