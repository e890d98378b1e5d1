"""
Migration executor: applies one versioned migration set.

Each execution is a linear sequence:

1. Pre-check: dependencies applied, set not already applied (unless forced).
2. Backup, when the set requires one or the caller asks for it. A failed
   backup aborts before any step runs.
3. Steps in declaration order, each bounded by its timeout and governed by
   its error-handling policy.
4. Post-validation of the set's validation queries, when requested.
5. Recording of the finalized result in the history ledger.

Step failures are accumulated into the result rather than raised, so callers
always get the complete picture of which steps ran. Dry runs make no
statement executor calls and never touch the ledger.
"""

import asyncio
import time

from strata.config.logging_config import get_logger
from strata.migrations.backup import BackupManager
from strata.migrations.exceptions import (
    AlreadyAppliedError,
    BackupError,
    ErrorCode,
    StatementTimeoutError,
    UnmetDependencyError,
)
from strata.migrations.ledger import HistoryLedger
from strata.migrations.models import (
    BackupOptions,
    ErrorHandling,
    ExecutionOptions,
    ExecutionResult,
    MigrationStep,
    StatementResult,
    StepResult,
    StepStatus,
    VersionedMigrationSet,
)
from strata.migrations.registry import MigrationRegistry
from strata.migrations.statement_executor import StatementExecutor
from strata.migrations.validation import run_validation_queries

log = get_logger(__name__)

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 0.5


class MigrationExecutor:
    """Orchestrates the execution of single migration sets.

    Args:
        registry: Catalog the versions are looked up in
        ledger: History ledger consulted for preconditions and appended to
        executor: Statement executor for the target store
        backup_manager: Takes the pre-execution backups
        retry_attempts: Total attempts for steps with the ``retry`` policy
        retry_delay: Base delay in seconds between retries (doubles per attempt)
        retry_exhausted_policy: What a ``retry`` step does once every attempt
            failed: ``fail`` halts the set, ``continue`` moves on
    """

    def __init__(
        self,
        registry: MigrationRegistry,
        ledger: HistoryLedger,
        executor: StatementExecutor,
        backup_manager: BackupManager,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        retry_exhausted_policy: ErrorHandling = ErrorHandling.FAIL,
    ):
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        retry_exhausted_policy = ErrorHandling(retry_exhausted_policy)
        if retry_exhausted_policy == ErrorHandling.RETRY:
            raise ValueError("retry_exhausted_policy must be 'fail' or 'continue'")

        self._registry = registry
        self._ledger = ledger
        self._executor = executor
        self._backup_manager = backup_manager
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.retry_exhausted_policy = retry_exhausted_policy

    # -------------------------------------------------------------------------
    # Preconditions
    # -------------------------------------------------------------------------

    def check_preconditions(
        self,
        migration_set: VersionedMigrationSet,
        options: ExecutionOptions,
        assume_applied: set[str] | None = None,
    ) -> None:
        """Raise if the set may not run now. Has no side effects.

        Versions in ``assume_applied`` count as applied; a dry-run preview of
        a whole plan uses it for the sets simulated earlier in the plan.

        Raises:
            UnmetDependencyError: If a dependency has no successful execution
            AlreadyAppliedError: If the set is applied and ``force`` is False
        """
        version = migration_set.version
        for dep in migration_set.dependencies:
            if dep not in (assume_applied or ()) and not self._ledger.is_applied(dep):
                raise UnmetDependencyError(
                    f"Dependency '{dep}' must be applied before '{version}'",
                    migration_version=version,
                )

        if self._ledger.is_applied(version) and not options.force:
            raise AlreadyAppliedError(f"Version '{version}' already applied", migration_version=version)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        version: str,
        options: ExecutionOptions | None = None,
        assume_applied: set[str] | None = None,
    ) -> ExecutionResult:
        """Apply one migration set.

        Args:
            version: Registered version to apply
            options: Dry-run, force, backup, validation and override options
            assume_applied: Versions to treat as applied when checking dependencies

        Returns:
            The finalized ExecutionResult; ``success`` is True only when no
            error was accumulated

        Raises:
            MigrationNotFoundError: If the version is not registered
            UnmetDependencyError: If a dependency is not applied
            AlreadyAppliedError: If the set is applied and not forced
            LedgerError: If the result cannot be persisted
        """
        options = options or ExecutionOptions()
        migration_set = self._registry.get(version)
        self.check_preconditions(migration_set, options, assume_applied)

        result = ExecutionResult(target_id=version, dry_run=options.dry_run)
        if options.dry_run:
            log.info(f"[DRY RUN] Previewing migration {version} ({len(migration_set.steps)} steps)")
        else:
            log.info(f"Applying migration {version}: {migration_set.description}")

        if not options.dry_run and (migration_set.backup_required or options.backup_before):
            try:
                backup = await self._backup_manager.create_backup(
                    version,
                    BackupOptions(description=f"Backup created before applying migration {version}"),
                )
                result.rollback_point = backup.id
            except BackupError as e:
                log.error(f"Backup before migration {version} failed, aborting: {e}")
                result.add_error(ErrorCode.BACKUP_FAILED, str(e))
                result.step_results = [
                    StepResult(step_id=step.id, status=StepStatus.SKIPPED) for step in migration_set.steps
                ]
                return self._record(result, options)

        halted = False
        for step in migration_set.steps:
            if halted:
                result.step_results.append(StepResult(step_id=step.id, status=StepStatus.SKIPPED))
                continue

            if options.dry_run:
                result.step_results.append(StepResult(step_id=step.id, status=StepStatus.SIMULATED))
                continue

            step_result = await self._run_step(step, options, result)
            result.step_results.append(step_result)
            result.records_processed += step_result.records_processed
            result.records_affected += step_result.records_affected

            if step_result.status == StepStatus.FAILED and self._halts(step):
                log.error(f"Step '{step.id}' failed under '{step.error_handling.value}' policy, halting {version}")
                halted = True

        if options.dry_run:
            result.warnings.append("Dry run: no statements were executed")
        elif options.validate_after:
            result.errors.extend(await run_validation_queries(self._executor, migration_set.validation_queries))

        return self._record(result, options)

    def _halts(self, step: MigrationStep) -> bool:
        if step.error_handling == ErrorHandling.RETRY:
            return self.retry_exhausted_policy == ErrorHandling.FAIL
        return step.error_handling == ErrorHandling.FAIL

    def _record(self, result: ExecutionResult, options: ExecutionOptions) -> ExecutionResult:
        result.finalize()
        if not options.dry_run:
            self._ledger.append_result(result)
            if result.success:
                log.info(f"Migration {result.target_id} applied successfully in {result.duration:.2f}s")
            else:
                log.error(f"Migration {result.target_id} failed with {len(result.errors)} error(s)")
        return result

    async def _run_step(
        self,
        step: MigrationStep,
        options: ExecutionOptions,
        result: ExecutionResult,
    ) -> StepResult:
        max_attempts = self.retry_attempts if step.error_handling == ErrorHandling.RETRY else 1
        started = time.monotonic()
        step_result = StepResult(step_id=step.id, status=StepStatus.FAILED)
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            step_result.attempts = attempt
            try:
                stats = await self._execute_script(step, options)
            except Exception as e:
                last_error = e
                log.warning(f"Step '{step.id}' attempt {attempt}/{max_attempts} failed: {e}")
                if attempt < max_attempts:
                    result.warnings.append(f"Step '{step.id}' attempt {attempt} failed: {e}")
                    await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))
                continue

            step_result.status = StepStatus.APPLIED
            step_result.records_processed = stats.records_processed
            step_result.records_affected = stats.records_affected
            last_error = None
            break

        step_result.duration = time.monotonic() - started

        if last_error is not None:
            code = ErrorCode.STEP_TIMEOUT if isinstance(last_error, StatementTimeoutError) else ErrorCode.STEP_FAILED
            result.add_error(
                code,
                f"Step '{step.id}' failed: {last_error}",
                step_id=step.id,
                details={"attempts": step_result.attempts, "policy": step.error_handling.value},
            )
            if step.rollback_script:
                await self._rollback_step(step, options, result)
            return step_result

        if step.validation_query:
            verification = await self._executor.query(step.validation_query)
            if not verification.success:
                result.warnings.append(f"Validation for step '{step.id}' failed: {verification.error}")
            elif verification.data in (None, [], {}):
                result.warnings.append(f"Validation query for step '{step.id}' returned no results")
        return step_result

    async def _execute_script(self, step: MigrationStep, options: ExecutionOptions) -> StatementResult:
        timeout = options.timeout or step.timeout
        if step.batch_size is None:
            return await self._executor.execute(step.script, timeout)

        # Re-run the batched script until a batch comes back short. The timeout
        # bounds the whole batched step, not each batch.
        batch_size = options.batch_size or step.batch_size
        deadline = time.monotonic() + timeout
        total = StatementResult()
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StatementTimeoutError(
                    f"Batched step '{step.id}' exceeded timeout of {timeout}s after "
                    f"{total.records_affected} records",
                    timeout,
                )
            stats = await self._executor.execute(step.script, remaining, params={"batch_size": batch_size})
            total.records_processed += stats.records_processed
            total.records_affected += stats.records_affected
            if stats.records_affected < batch_size:
                return total

    async def _rollback_step(self, step: MigrationStep, options: ExecutionOptions, result: ExecutionResult) -> None:
        assert step.rollback_script is not None
        log.info(f"Rolling back failed step '{step.id}'")
        try:
            await self._executor.execute(step.rollback_script, options.timeout or step.timeout)
            result.warnings.append(f"Rolled back step: {step.id}")
        except Exception as e:
            log.error(f"Rollback of step '{step.id}' failed: {e}")
            result.add_error(
                ErrorCode.STEP_ROLLBACK_FAILED,
                f"Rollback of step '{step.id}' failed: {e}",
                step_id=step.id,
            )
