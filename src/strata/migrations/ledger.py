"""
History ledger for the migration system.

The ledger is the source of truth for what *has* been applied. It keeps every
execution attempt (apply, rollback, restore; successful or not) and every
backup created, in a single JSON document::

    {"history": [...], "backups": [...], "lastUpdated": "..."}

The document is loaded fully at construction and rewritten atomically on
every append: the new content goes to a temporary file in the same directory,
is flushed and fsynced, then replaces the old file with ``os.replace``. An
append returns only after the data is durable, so a crash right after a
successful migration cannot lose the record of it.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from strata.config.logging_config import get_logger
from strata.migrations.exceptions import LedgerError
from strata.migrations.models import BackupRecord, ExecutionResult, utcnow

log = get_logger(__name__)

ROLLBACK_PREFIX = "rollback-"
RESTORE_PREFIX = "restore-"


class LedgerDocument(BaseModel):
    """On-disk shape of the ledger."""

    model_config = ConfigDict(populate_by_name=True)

    history: list[ExecutionResult] = Field(default_factory=list)
    backups: list[BackupRecord] = Field(default_factory=list)
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")


class HistoryLedger:
    """Durable, append-only record of executions and backups.

    Args:
        path: JSON file backing the ledger. ``None`` keeps the ledger in
            memory only, for previews and tests.
    """

    def __init__(self, path: Path | str | None = None):
        self._path = Path(path) if path is not None else None
        self._document = self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self) -> LedgerDocument:
        if self._path is None or not self._path.exists():
            return LedgerDocument()
        try:
            raw = self._path.read_text(encoding="utf-8")
            if not raw.strip():
                return LedgerDocument()
            document = LedgerDocument.model_validate_json(raw)
        except (OSError, ValidationError, ValueError) as e:
            raise LedgerError(f"Failed to load history ledger {self._path}: {e}") from e
        log.debug(
            f"Loaded ledger {self._path}: {len(document.history)} executions, {len(document.backups)} backups"
        )
        return document

    def _persist(self) -> None:
        self._document.last_updated = utcnow()
        if self._path is None:
            return

        content = self._document.model_dump_json(by_alias=True, indent=2)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise LedgerError(f"Failed to persist history ledger {self._path}: {e}") from e
        self._fsync_directory()

    def _fsync_directory(self) -> None:
        assert self._path is not None
        try:
            dir_fd = os.open(self._path.parent, os.O_RDONLY)
        except OSError:
            # Not supported on every platform (e.g. Windows)
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    # -------------------------------------------------------------------------
    # Appends
    # -------------------------------------------------------------------------

    def append_result(self, result: ExecutionResult) -> None:
        """Append a finalized execution result and persist before returning."""
        self._document.history.append(result.model_copy(deep=True))
        try:
            self._persist()
        except LedgerError:
            self._document.history.pop()
            raise
        log.debug(f"Recorded execution {result.target_id} (success={result.success})")

    def append_backup(self, backup: BackupRecord) -> None:
        """Catalog a backup and persist before returning."""
        self._document.backups.append(backup)
        try:
            self._persist()
        except LedgerError:
            self._document.backups.pop()
            raise

    def mark_backups_purged(self, backup_ids: Iterable[str], purged_at: datetime | None = None) -> None:
        """Flag catalog entries whose artifacts were removed by retention maintenance.

        Entries are kept so the audit trail stays complete.
        """
        ids = set(backup_ids)
        if not ids:
            return
        stamp = purged_at or utcnow()
        previous = list(self._document.backups)
        self._document.backups = [
            b.model_copy(update={"purged_at": stamp}) if b.id in ids else b for b in self._document.backups
        ]
        try:
            self._persist()
        except LedgerError:
            self._document.backups = previous
            raise

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def history(self) -> list[ExecutionResult]:
        return [r.model_copy(deep=True) for r in self._document.history]

    @property
    def backups(self) -> list[BackupRecord]:
        return list(self._document.backups)

    @property
    def last_updated(self) -> datetime | None:
        return self._document.last_updated

    def get_backup(self, backup_id: str) -> BackupRecord | None:
        for backup in self._document.backups:
            if backup.id == backup_id:
                return backup
        return None

    def results_for(self, target_id: str) -> list[ExecutionResult]:
        return [r.model_copy(deep=True) for r in self._document.history if r.target_id == target_id]

    def is_applied(self, version: str) -> bool:
        """Whether ``version`` is currently applied.

        A version is applied when its most recent successful event is an
        apply rather than a ``rollback-<version>``. Failed attempts and
        restores do not change the answer.
        """
        rollback_id = f"{ROLLBACK_PREFIX}{version}"
        for result in reversed(self._document.history):
            if not result.success:
                continue
            if result.target_id == version:
                return True
            if result.target_id == rollback_id:
                return False
        return False

    def applied_versions(self) -> set[str]:
        candidates = {
            r.target_id
            for r in self._document.history
            if r.success and not r.target_id.startswith((ROLLBACK_PREFIX, RESTORE_PREFIX))
        }
        return {v for v in candidates if self.is_applied(v)}

    def to_document(self) -> dict[str, Any]:
        return json.loads(self._document.model_dump_json(by_alias=True))
