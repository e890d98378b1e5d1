"""
Backup management for the migration system.

Creates checksummed snapshots of the target store before risky executions,
catalogs them in the history ledger, restores them through the statement
executor, and removes artifacts whose retention window has elapsed.

Backups are kept independently of migration outcome: the pre-execution
backup of a failed migration stays available for manual restore.
"""

import asyncio
import gzip
import uuid
from datetime import datetime
from pathlib import Path

from strata.config.logging_config import get_logger
from strata.migrations.checksum import compute_bytes_checksum, compute_file_checksum
from strata.migrations.exceptions import (
    BackupError,
    BackupNotFoundError,
    ChecksumMismatchError,
    ErrorCode,
    RestoreError,
)
from strata.migrations.ledger import RESTORE_PREFIX, HistoryLedger
from strata.migrations.models import (
    BackupOptions,
    BackupRecord,
    Compression,
    ExecutionResult,
    utcnow,
)
from strata.migrations.statement_executor import StatementExecutor

log = get_logger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_BACKUP_TIMEOUT = 600.0
DEFAULT_RESTORE_TIMEOUT = 300.0


class BackupManager:
    """Creates, catalogs, verifies and restores snapshots of one target store.

    Args:
        executor: Statement executor for the target store
        ledger: History ledger that catalogs backups and records restores
        backup_dir: Directory for backup artifacts
        default_compression: Compression used when a request does not name one
        retention_days: Default retention window for new backups
        backup_timeout: Deadline in seconds for taking a snapshot
        restore_timeout: Deadline in seconds for replaying an artifact
    """

    def __init__(
        self,
        executor: StatementExecutor,
        ledger: HistoryLedger,
        backup_dir: Path | str,
        default_compression: Compression = Compression.GZIP,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        backup_timeout: float = DEFAULT_BACKUP_TIMEOUT,
        restore_timeout: float = DEFAULT_RESTORE_TIMEOUT,
    ):
        self._executor = executor
        self._ledger = ledger
        self.backup_dir = Path(backup_dir)
        self.default_compression = Compression(default_compression)
        self.retention_days = retention_days
        self.backup_timeout = backup_timeout
        self.restore_timeout = restore_timeout

    def _artifact_path(self, backup_id: str, compression: Compression) -> Path:
        suffix = ".sql.gz" if compression == Compression.GZIP else ".sql"
        return self.backup_dir / f"{backup_id}{suffix}"

    @staticmethod
    def _new_backup_id(prefix: str, version: str) -> str:
        timestamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        return f"{prefix}-{version}-{timestamp}-{uuid.uuid4().hex[:6]}"

    async def create_backup(self, version: str, options: BackupOptions | None = None) -> BackupRecord:
        """Snapshot the target store and catalog the artifact.

        Args:
            version: Version the backup is associated with
            options: Type, compression, retention, description and id prefix

        Returns:
            The catalogued BackupRecord

        Raises:
            BackupError: If the snapshot, the write or the catalog append fails
        """
        options = options or BackupOptions()
        compression = options.compression or self.default_compression
        backup_id = self._new_backup_id(options.id_prefix, version)
        location = self._artifact_path(backup_id, compression)

        log.info(f"Creating {options.type.value} backup {backup_id} for {version}")
        try:
            script = await asyncio.wait_for(self._executor.snapshot(options.type), self.backup_timeout)
        except TimeoutError as e:
            await self._executor.interrupt()
            raise BackupError(f"Backup {backup_id} exceeded timeout of {self.backup_timeout}s", version) from e
        except Exception as e:
            raise BackupError(f"Failed to snapshot store for backup {backup_id}: {e}", version) from e

        content = script.encode("utf-8")
        if compression == Compression.GZIP:
            # mtime=0 keeps the artifact bytes deterministic for a given snapshot
            content = gzip.compress(content, mtime=0)

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            location.write_bytes(content)
        except OSError as e:
            raise BackupError(f"Failed to write backup artifact {location}: {e}", version) from e

        record = BackupRecord(
            id=backup_id,
            version=version,
            type=options.type,
            size=len(content),
            compression=compression,
            location=str(location),
            checksum=compute_bytes_checksum(content),
            retention_days=options.retention_days or self.retention_days,
            created_by="migration-system",
            description=options.description or f"Backup created before applying migration {version}",
        )
        try:
            self._ledger.append_backup(record)
        except Exception as e:
            raise BackupError(f"Failed to catalog backup {backup_id}: {e}", version) from e

        log.info(f"Backup {backup_id} created ({record.size:,} bytes)")
        return record

    def get_backup(self, backup_id: str) -> BackupRecord:
        backup = self._ledger.get_backup(backup_id)
        if backup is None:
            raise BackupNotFoundError(f"Backup '{backup_id}' not found")
        return backup

    def list_backups(self) -> list[BackupRecord]:
        """Return all catalogued backups, newest first."""
        return sorted(self._ledger.backups, key=lambda b: b.timestamp, reverse=True)

    def verify_backup(self, backup_id: str) -> bool:
        """Check that a backup's artifact exists and matches its checksum."""
        backup = self.get_backup(backup_id)
        path = Path(backup.location)
        if backup.purged_at is not None or not path.exists():
            log.warning(f"Backup artifact missing: {path}")
            return False
        actual = compute_file_checksum(path)
        if actual != backup.checksum:
            log.error(f"Backup {backup_id} checksum mismatch: expected {backup.checksum}, got {actual}")
            return False
        return True

    def _read_verified(self, backup: BackupRecord) -> str:
        path = Path(backup.location)
        if backup.purged_at is not None:
            raise RestoreError(f"Backup '{backup.id}' was purged on {backup.purged_at.isoformat()}")
        if not path.exists():
            raise RestoreError(f"Backup file not found: {path}")

        content = path.read_bytes()
        actual = compute_bytes_checksum(content)
        if actual != backup.checksum:
            raise ChecksumMismatchError(
                f"Checksum mismatch for backup '{backup.id}'",
                migration_version=backup.version,
                expected_checksum=backup.checksum,
                actual_checksum=actual,
            )

        try:
            if backup.compression == Compression.GZIP:
                content = gzip.decompress(content)
            return content.decode("utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RestoreError(f"Backup '{backup.id}' could not be decoded: {e}") from e

    async def restore(self, backup_id: str) -> ExecutionResult:
        """Restore the target store from a catalogued backup.

        The artifact checksum is verified before the store is touched. Full
        and schema-only restores first clear the objects the store holds now,
        so the store ends up as it was at backup time. The outcome is
        recorded in the ledger as ``restore-<backup_id>``.

        Raises:
            BackupNotFoundError: If the id is not catalogued
            RestoreError: If the artifact is missing, purged or unreadable
            ChecksumMismatchError: If the artifact was modified
        """
        backup = self.get_backup(backup_id)
        script = self._read_verified(backup)

        result = ExecutionResult(target_id=f"{RESTORE_PREFIX}{backup_id}")
        log.info(f"Restoring backup {backup_id} ({backup.type.value}, version {backup.version})")
        try:
            prelude = await self._executor.reset_script(backup.type)
            stats = await self._executor.execute(prelude + script, self.restore_timeout)
            result.records_processed += stats.records_processed
            result.records_affected += stats.records_affected
        except Exception as e:
            log.error(f"Restore of backup {backup_id} failed: {e}")
            result.add_error(ErrorCode.RESTORE_ERROR, str(e), details={"backup_id": backup_id})

        result.finalize()
        self._ledger.append_result(result)
        if result.success:
            log.info(f"Backup {backup_id} restored in {result.duration:.2f}s")
        return result

    def purge_expired(self, now: datetime | None = None) -> list[str]:
        """Delete artifacts whose retention window has elapsed.

        Catalog entries stay in the ledger, flagged with ``purged_at``.

        Returns:
            Ids of the purged backups
        """
        now = now or utcnow()
        purged = []
        for backup in self._ledger.backups:
            if backup.purged_at is not None or backup.expires_at() > now:
                continue
            path = Path(backup.location)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                log.error(f"Failed to delete expired backup {path}: {e}")
                continue
            purged.append(backup.id)
            log.info(f"Purged expired backup {backup.id}")

        self._ledger.mark_backups_purged(purged, purged_at=now)
        return purged
