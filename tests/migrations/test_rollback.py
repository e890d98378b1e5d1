"""Tests for the RollbackCoordinator."""

import pytest

from strata.migrations.exceptions import (
    ErrorCode,
    MigrationNotFoundError,
    RollbackError,
    RollbackNotAvailableError,
)
from strata.migrations.models import BackupType


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_without_script(self, manager, fake_executor, make_set):
        manager.register(make_set("1.0.0"))
        await manager.execute("1.0.0")
        calls = len(fake_executor.calls)

        with pytest.raises(RollbackNotAvailableError):
            await manager.rollback("1.0.0", "bad deploy")

        assert len(fake_executor.calls) == calls
        assert len(manager.ledger.history) == 1

    @pytest.mark.asyncio
    async def test_rollback_unknown_version(self, manager):
        with pytest.raises(MigrationNotFoundError):
            await manager.rollback("9.9.9")

    @pytest.mark.asyncio
    async def test_rollback_takes_backup_and_runs_script(self, manager, fake_executor, make_set):
        manager.register(make_set("1.0.0", rollback_script="-- drop users"))
        await manager.execute("1.0.0")

        result = await manager.rollback("1.0.0", "bad deploy")

        assert result.success
        assert result.target_id == "rollback-1.0.0"
        assert result.rollback_point.startswith("pre-rollback-1.0.0-")
        assert "Rollback initiated: bad deploy" in result.warnings
        assert ("snapshot", BackupType.FULL) in fake_executor.calls
        assert fake_executor.executed[-1] == "-- drop users"

        # Rollback is a new history entry, not a deletion
        assert [r.target_id for r in manager.ledger.history] == ["1.0.0", "rollback-1.0.0"]
        assert not manager.ledger.is_applied("1.0.0")

    @pytest.mark.asyncio
    async def test_rolled_back_version_can_be_reapplied(self, manager, fake_executor, make_set):
        manager.register(make_set("1.0.0", rollback_script="-- drop users"))
        await manager.execute("1.0.0")
        await manager.rollback("1.0.0")

        result = await manager.execute("1.0.0")

        assert result.success
        assert manager.ledger.is_applied("1.0.0")

    @pytest.mark.asyncio
    async def test_failed_rollback_is_recorded(self, manager, fake_executor, make_set):
        manager.register(make_set("1.0.0", rollback_script="-- drop users"))
        await manager.execute("1.0.0")
        fake_executor.fail("-- drop users", RuntimeError("table locked"))

        result = await manager.rollback("1.0.0")

        assert not result.success
        assert [e.code for e in result.errors] == [ErrorCode.ROLLBACK_ERROR.value]
        assert manager.ledger.history[-1].target_id == "rollback-1.0.0"
        assert manager.ledger.is_applied("1.0.0")

    @pytest.mark.asyncio
    async def test_failed_rollback_raises_when_asked(self, manager, fake_executor, make_set):
        manager.register(make_set("1.0.0", rollback_script="-- drop users"))
        fake_executor.fail("-- drop users", RuntimeError("table locked"))

        with pytest.raises(RollbackError):
            await manager.rollback("1.0.0", raise_on_failure=True)

        assert manager.ledger.history[-1].target_id == "rollback-1.0.0"

    @pytest.mark.asyncio
    async def test_rollback_validation_failure_is_not_recursive(self, manager, fake_executor, make_set):
        manager.register(
            make_set("1.0.0", rollback_script="-- drop users", validation_queries=["SELECT consistency"])
        )
        await manager.execute("1.0.0")
        fake_executor.query_errors["SELECT consistency"] = "no such table: users"

        result = await manager.rollback("1.0.0")

        assert [e.code for e in result.errors] == [ErrorCode.VALIDATION_FAILED.value]
        assert fake_executor.executed.count("-- drop users") == 1

    @pytest.mark.asyncio
    async def test_rollback_aborts_when_backup_fails(self, manager, fake_executor, make_set):
        manager.register(make_set("1.0.0", rollback_script="-- drop users"))
        await manager.execute("1.0.0")
        fake_executor.snapshot_error = RuntimeError("disk full")

        result = await manager.rollback("1.0.0")

        assert [e.code for e in result.errors] == [ErrorCode.BACKUP_FAILED.value]
        assert "-- drop users" not in fake_executor.executed
        assert manager.ledger.is_applied("1.0.0")
