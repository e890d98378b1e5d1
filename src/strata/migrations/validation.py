"""
Data validation for the migration system.

Two entry points:

- :class:`ValidationEngine` runs declarative :class:`DataValidationRule`
  checks independently of any migration (health checks, audits, deployment
  gates).
- :func:`run_validation_queries` runs a migration set's post-apply queries
  and turns failures into result errors; it is shared by the executor and
  the rollback coordinator.

Result comparison is structural and shallow, see :func:`compare_results`.
"""

from typing import Any

from strata.config.logging_config import get_logger
from strata.migrations.exceptions import ErrorCode
from strata.migrations.models import (
    DataValidationRule,
    MigrationErrorRecord,
    RuleResult,
    ValidationSummary,
)
from strata.migrations.statement_executor import StatementExecutor

log = get_logger(__name__)


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def compare_results(actual: Any, expected: Any) -> bool:
    """Compare a query result against an expected shape.

    The comparison is deliberately shallow so volatile fields (timestamps,
    generated ids) do not break checks:

    - Values of different kinds never match (ints and floats are both
      numbers; booleans are not numbers).
    - Scalars match on equality.
    - Arrays match when their lengths are equal; elements are not compared.
    - Objects match when every key of ``expected`` is present in ``actual``
      and, for each such key, a scalar expected value equals the actual one
      while a nested array/object expected value only needs an actual value
      of the same kind. Extra keys in ``actual`` are ignored.
    """
    kind = _kind(actual)
    if kind != _kind(expected):
        return False
    if kind == "array":
        return len(actual) == len(expected)
    if kind == "object":
        for key, expected_value in expected.items():
            if key not in actual:
                return False
            expected_kind = _kind(expected_value)
            if expected_kind in ("array", "object"):
                if _kind(actual[key]) != expected_kind:
                    return False
            elif _kind(actual[key]) != expected_kind or actual[key] != expected_value:
                return False
        return True
    return actual == expected


async def run_validation_queries(executor: StatementExecutor, queries: list[str]) -> list[MigrationErrorRecord]:
    """Run post-apply validation queries.

    A query fails only when the store reports an error for it. An empty
    result is a pass: checks such as ``PRAGMA foreign_key_check`` return
    no rows when healthy.

    Returns:
        One error per failing query
    """
    errors: list[MigrationErrorRecord] = []
    for query in queries:
        try:
            result = await executor.query(query)
        except Exception as e:
            errors.append(
                MigrationErrorRecord(
                    code=ErrorCode.VALIDATION_ERROR.value,
                    message=f"Validation error: {e}",
                    details={"query": query},
                )
            )
            continue

        if not result.success:
            errors.append(
                MigrationErrorRecord(
                    code=ErrorCode.VALIDATION_FAILED.value,
                    message=f"Validation query failed: {result.error}",
                    details={"query": query},
                )
            )
    return errors


class ValidationEngine:
    """Runs declarative data validation rules against the target store."""

    def __init__(self, executor: StatementExecutor):
        self._executor = executor

    async def run_rules(self, rules: list[DataValidationRule]) -> ValidationSummary:
        """Run every rule and summarize.

        A rule whose query errors is always counted as failed. Otherwise a
        mismatching rule counts toward ``warnings`` when its severity is
        ``warning`` and toward ``failed`` in every other case. Critical
        failures are counted like any other; use
        ``summary.critical_failures`` to gate on them.
        """
        summary = ValidationSummary()

        for rule in rules:
            try:
                query_result = await self._executor.query(rule.query)
                if not query_result.success:
                    raise RuntimeError(query_result.error or "query failed")
            except Exception as e:
                summary.results.append(
                    RuleResult(rule=rule, success=False, message=f"Validation error: {e}")
                )
                summary.failed += 1
                log.warning(f"Validation rule '{rule.name}' could not run: {e}")
                continue

            success = compare_results(query_result.data, rule.expected_result)
            summary.results.append(
                RuleResult(
                    rule=rule,
                    success=success,
                    message="Validation passed" if success else "Validation failed",
                    details={"actual": query_result.data, "expected": rule.expected_result},
                )
            )
            if success:
                summary.passed += 1
            elif rule.severity == "warning":
                summary.warnings += 1
            else:
                summary.failed += 1

        if summary.critical_failures:
            log.error(
                "Critical validation rules failed: "
                + ", ".join(r.rule.name for r in summary.critical_failures)
            )
        return summary
