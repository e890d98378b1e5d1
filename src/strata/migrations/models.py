"""
Data model for versioned migration sets, execution results and backups.

All records are pydantic models so they serialize into the history ledger
and the CLI's JSON export without bespoke encoders.
"""

import re
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StepKind(str, Enum):
    """Informational category of a step. Does not change execution."""

    SCHEMA = "schema"
    DATA = "data"
    INDEX = "index"
    CONSTRAINT = "constraint"
    FUNCTION = "function"
    PROCEDURE = "procedure"


class ErrorHandling(str, Enum):
    FAIL = "fail"
    CONTINUE = "continue"
    RETRY = "retry"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SCHEMA_ONLY = "schema_only"
    DATA_ONLY = "data_only"


class Compression(str, Enum):
    NONE = "none"
    GZIP = "gzip"


class StepStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    SIMULATED = "simulated"


_VERSION_TOKEN = re.compile(r"(\d+)")


def version_key(version: str) -> tuple:
    """Natural sort key: numeric runs compare numerically, the rest lexically.

    ``"1.10.0"`` sorts after ``"1.9.0"``; timestamp versions such as
    ``"20250101_000000"`` keep their lexical order.
    """
    parts = _VERSION_TOKEN.split(version)
    return tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts if p != "")


def utcnow() -> datetime:
    return datetime.now(UTC)


class MigrationStep(BaseModel):
    """One atomic unit of change within a migration set.

    Attributes:
        id: Step identifier, unique within its set
        kind: Informational category
        script: The change script handed to the statement executor
        rollback_script: Best-effort undo run when this step fails
        validation_query: Query run after the step succeeds
        timeout: Seconds the statement may run before it is interrupted
        batch_size: Rows per batch; the script is re-run until a batch
            affects fewer rows than this
        error_handling: What a failure of this step does to the rest of the set
        depends_on: Informational ordering hint (step ids)
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    kind: StepKind = StepKind.SCHEMA
    script: str = Field(min_length=1)
    rollback_script: str | None = None
    validation_query: str | None = None
    timeout: float = Field(default=30.0, gt=0)
    batch_size: int | None = Field(default=None, gt=0)
    error_handling: ErrorHandling = ErrorHandling.FAIL
    depends_on: list[str] = Field(default_factory=list)


class VersionedMigrationSet(BaseModel):
    """A named, checksummed, ordered bundle of steps with declared dependencies."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    description: str = ""
    dependencies: list[str] = Field(default_factory=list)
    steps: list[MigrationStep] = Field(min_length=1)
    rollback_script: str | None = None
    validation_queries: list[str] = Field(default_factory=list)
    estimated_duration: float = Field(default=0.0, ge=0, description="Minutes")
    risk_level: RiskLevel = RiskLevel.LOW
    requires_downtime: bool = False
    backup_required: bool = False
    checksum: str = ""

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: list[MigrationStep]) -> list[MigrationStep]:
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        return steps


class MigrationErrorRecord(BaseModel):
    """A structured error accumulated into an execution result."""

    code: str
    message: str
    step_id: str | None = None
    details: dict[str, Any] | None = None


class StepResult(BaseModel):
    step_id: str
    status: StepStatus
    attempts: int = 0
    duration: float = 0.0
    records_processed: int = 0
    records_affected: int = 0


class ExecutionResult(BaseModel):
    """The record of one attempt to apply, roll back or restore.

    ``target_id`` is the version for applies, ``rollback-<version>`` for
    rollbacks and ``restore-<backup id>`` for restores.
    """

    target_id: str
    success: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    duration: float = 0.0
    records_processed: int = 0
    records_affected: int = 0
    errors: list[MigrationErrorRecord] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    rollback_point: str | None = None
    dry_run: bool = False
    step_results: list[StepResult] = Field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        step_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if isinstance(code, Enum):
            code = code.value
        self.errors.append(MigrationErrorRecord(code=code, message=message, step_id=step_id, details=details))

    def finalize(self) -> "ExecutionResult":
        """Stamp the end time and derive ``success`` from the error list."""
        self.finished_at = utcnow()
        self.duration = (self.finished_at - self.started_at).total_seconds()
        self.success = not self.errors
        return self


class BackupRecord(BaseModel):
    """A catalogued snapshot of the target store."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: str
    timestamp: datetime = Field(default_factory=utcnow)
    type: BackupType = BackupType.FULL
    size: int = 0
    compression: Compression = Compression.GZIP
    location: str
    checksum: str
    retention_days: int = 30
    created_by: str = "strata"
    description: str | None = None
    purged_at: datetime | None = None

    def expires_at(self) -> datetime:
        return self.timestamp + timedelta(days=self.retention_days)


class BackupOptions(BaseModel):
    type: BackupType = BackupType.FULL
    compression: Compression | None = None
    retention_days: int | None = Field(default=None, ge=1)
    description: str | None = None
    id_prefix: str = "backup"


class DataValidationRule(BaseModel):
    """A declarative check independent of any specific migration."""

    name: str
    description: str = ""
    category: Literal["integrity", "consistency", "referential", "business_rule"] = "integrity"
    query: str
    expected_result: Any = None
    critical: bool = False
    severity: Literal["error", "warning", "info"] = "error"


class RuleResult(BaseModel):
    rule: DataValidationRule
    success: bool
    message: str
    details: dict[str, Any] | None = None


class ValidationSummary(BaseModel):
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    results: list[RuleResult] = Field(default_factory=list)

    @property
    def critical_failures(self) -> list[RuleResult]:
        return [r for r in self.results if r.rule.critical and not r.success]


class ExecutionOptions(BaseModel):
    """Options for a single execution.

    ``timeout`` overrides every step's own timeout when set. ``batch_size``
    overrides the batch size of steps that declare one; steps without a
    batch size still run once.
    ``backup_before`` forces a backup even when the set does not require one.
    """

    dry_run: bool = False
    force: bool = False
    backup_before: bool = False
    validate_after: bool = False
    timeout: float | None = Field(default=None, gt=0)
    batch_size: int | None = Field(default=None, gt=0)


class ExecutionPlan(BaseModel):
    target: str
    migrations: list[VersionedMigrationSet] = Field(default_factory=list)
    total_duration: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW
    downtime_required: bool = False
    backup_required: bool = False
    dependencies: list[str] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)

    @property
    def versions(self) -> list[str]:
        return [m.version for m in self.migrations]


class StatementResult(BaseModel):
    records_processed: int = 0
    records_affected: int = 0


class QueryResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
