"""
Exception classes for the migration system.

Provides specific exception types for the fatal failure scenarios of
registration, planning, execution preconditions, rollback, backup and restore.
Runtime step failures are not raised; they are accumulated into
``ExecutionResult.errors`` using the codes in :class:`ErrorCode`.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Codes recorded in ``ExecutionResult.errors``."""

    STEP_FAILED = "STEP_FAILED"
    STEP_TIMEOUT = "STEP_TIMEOUT"
    STEP_ROLLBACK_FAILED = "STEP_ROLLBACK_FAILED"
    BACKUP_FAILED = "BACKUP_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ROLLBACK_ERROR = "ROLLBACK_ERROR"
    RESTORE_ERROR = "RESTORE_ERROR"


class MigrationError(Exception):
    """Base exception for migration-related errors."""

    def __init__(self, message: str, migration_version: str | None = None):
        self.migration_version = migration_version
        super().__init__(message)


class MigrationNotFoundError(MigrationError):
    """Raised when a version is not present in the registry."""

    pass


class DependencyNotFoundError(MigrationError):
    """Raised when a declared dependency is not registered."""

    def __init__(self, message: str, migration_version: str, dependency: str):
        self.dependency = dependency
        super().__init__(message, migration_version)


class DuplicateVersionError(MigrationError):
    """Raised when a version is registered twice without ``force``."""

    pass


class ChecksumMismatchError(MigrationError):
    """Raised when a checksum does not match its recomputation.

    Used both at registration time (migration set content drifted after it was
    sealed) and at restore time (backup artifact was modified).
    """

    def __init__(
        self,
        message: str,
        migration_version: str | None,
        expected_checksum: str,
        actual_checksum: str,
    ):
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum
        super().__init__(message, migration_version)


class CircularDependencyError(MigrationError):
    """Raised when planning re-enters a version still on the recursion stack."""

    pass


class UnmetDependencyError(MigrationError):
    """Raised when a dependency has no successful execution in the ledger."""

    pass


class AlreadyAppliedError(MigrationError):
    """Raised when executing an applied version without ``force``."""

    pass


class MigrationDiscoveryError(MigrationError):
    """Raised when migration set files cannot be loaded."""

    pass


class RollbackNotAvailableError(MigrationError):
    """Raised when a set declares no whole-set rollback script."""

    pass


class RollbackError(MigrationError):
    """Raised when migration rollback fails."""

    pass


class BackupError(MigrationError):
    """Raised when a backup cannot be created."""

    pass


class BackupNotFoundError(BackupError):
    """Raised when a backup id is not in the catalog."""

    pass


class RestoreError(MigrationError):
    """Raised when a backup cannot be restored."""

    pass


class StatementTimeoutError(MigrationError):
    """Raised when a statement exceeds its timeout and was interrupted."""

    def __init__(self, message: str, timeout: float):
        self.timeout = timeout
        super().__init__(message)


class LedgerError(MigrationError):
    """Raised when the history ledger cannot be read or persisted."""

    pass
