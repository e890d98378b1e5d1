"""
Versioned migration and backup framework.

Applies ordered, checksummed migration sets to a store, records every
attempt in a durable history ledger, takes and restores verified backups,
and rolls sets back with their declared rollback scripts.
"""

from strata.migrations.checksum import compute_set_checksum, seal
from strata.migrations.exceptions import (
    AlreadyAppliedError,
    BackupError,
    BackupNotFoundError,
    ChecksumMismatchError,
    CircularDependencyError,
    DependencyNotFoundError,
    DuplicateVersionError,
    ErrorCode,
    LedgerError,
    MigrationDiscoveryError,
    MigrationError,
    MigrationNotFoundError,
    RestoreError,
    RollbackError,
    RollbackNotAvailableError,
    StatementTimeoutError,
    UnmetDependencyError,
)
from strata.migrations.ledger import HistoryLedger
from strata.migrations.manager import MigrationManager
from strata.migrations.models import (
    BackupOptions,
    BackupRecord,
    BackupType,
    DataValidationRule,
    ErrorHandling,
    ExecutionOptions,
    ExecutionPlan,
    ExecutionResult,
    MigrationStep,
    RiskLevel,
    StepKind,
    VersionedMigrationSet,
)
from strata.migrations.statement_executor import SQLiteStatementExecutor, StatementExecutor

__all__ = [
    "AlreadyAppliedError",
    "BackupError",
    "BackupNotFoundError",
    "BackupOptions",
    "BackupRecord",
    "BackupType",
    "ChecksumMismatchError",
    "CircularDependencyError",
    "DataValidationRule",
    "DependencyNotFoundError",
    "DuplicateVersionError",
    "ErrorCode",
    "ErrorHandling",
    "ExecutionOptions",
    "ExecutionPlan",
    "ExecutionResult",
    "HistoryLedger",
    "LedgerError",
    "MigrationDiscoveryError",
    "MigrationError",
    "MigrationManager",
    "MigrationNotFoundError",
    "MigrationStep",
    "RestoreError",
    "RiskLevel",
    "RollbackError",
    "RollbackNotAvailableError",
    "SQLiteStatementExecutor",
    "StatementExecutor",
    "StatementTimeoutError",
    "StepKind",
    "UnmetDependencyError",
    "VersionedMigrationSet",
    "compute_set_checksum",
    "seal",
]
