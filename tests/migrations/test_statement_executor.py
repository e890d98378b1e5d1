"""Tests for the SQLite statement executor."""

import asyncio

import aiosqlite
import pytest

from strata.migrations.exceptions import StatementTimeoutError
from strata.migrations.models import BackupType
from strata.migrations.statement_executor import SQLiteStatementExecutor


async def _seed(executor):
    await executor.execute(
        "CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT);"
        "INSERT INTO items (name) VALUES ('one'), ('two'), ('three');",
        timeout=5,
    )


class TestSQLiteStatementExecutor:
    @pytest.mark.asyncio
    async def test_execute_counts_changes(self, sqlite_executor):
        await sqlite_executor.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT);", timeout=5)

        result = await sqlite_executor.execute(
            "INSERT INTO items (name) VALUES ('a'), ('b'), ('c');",
            timeout=5,
        )

        assert result.records_affected == 3
        assert result.records_processed == 3

    @pytest.mark.asyncio
    async def test_execute_with_params(self, sqlite_executor):
        await _seed(sqlite_executor)

        result = await sqlite_executor.execute(
            "DELETE FROM items WHERE id IN (SELECT id FROM items LIMIT :batch_size)",
            timeout=5,
            params={"batch_size": 2},
        )

        assert result.records_affected == 2

    @pytest.mark.asyncio
    async def test_execute_failure_raises(self, sqlite_executor):
        with pytest.raises(aiosqlite.OperationalError):
            await sqlite_executor.execute("INSERT INTO nowhere VALUES (1);", timeout=5)

    @pytest.mark.asyncio
    async def test_query_shapes(self, sqlite_executor):
        await _seed(sqlite_executor)

        one = await sqlite_executor.query("SELECT name FROM items WHERE id = 1")
        many = await sqlite_executor.query("SELECT name FROM items ORDER BY id")
        none = await sqlite_executor.query("SELECT name FROM items WHERE id = 99")

        assert one.success and one.data == {"name": "one"}
        assert many.data == [{"name": "one"}, {"name": "two"}, {"name": "three"}]
        assert none.data == []

    @pytest.mark.asyncio
    async def test_query_errors_are_reported(self, sqlite_executor):
        result = await sqlite_executor.query("SELECT * FROM nowhere")

        assert not result.success
        assert "nowhere" in result.error

    @pytest.mark.asyncio
    async def test_timeout_interrupts(self, sqlite_executor):
        slow = (
            "WITH RECURSIVE counter(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM counter) "
            "SELECT COUNT(*) FROM counter;"
        )

        with pytest.raises(StatementTimeoutError) as exc_info:
            await asyncio.wait_for(sqlite_executor.execute(slow, timeout=0.1), 10)

        assert exc_info.value.timeout == 0.1

    @pytest.mark.asyncio
    async def test_full_snapshot_restores_state(self, sqlite_executor):
        await _seed(sqlite_executor)
        script = await sqlite_executor.snapshot(BackupType.FULL)

        await sqlite_executor.execute("DELETE FROM items; ALTER TABLE items ADD COLUMN extra TEXT;", timeout=5)
        await sqlite_executor.execute(script, timeout=5)

        restored = await sqlite_executor.query("SELECT * FROM items ORDER BY id")
        assert restored.data == [
            {"id": 1, "name": "one"},
            {"id": 2, "name": "two"},
            {"id": 3, "name": "three"},
        ]

    @pytest.mark.asyncio
    async def test_schema_only_snapshot(self, sqlite_executor):
        await _seed(sqlite_executor)
        script = await sqlite_executor.snapshot(BackupType.SCHEMA_ONLY)

        assert "CREATE TABLE" in script
        assert "INSERT INTO" not in script

        await sqlite_executor.execute(script, timeout=5)
        count = await sqlite_executor.query("SELECT COUNT(*) AS count FROM items")
        assert count.data == {"count": 0}

    @pytest.mark.asyncio
    async def test_data_only_snapshot(self, sqlite_executor):
        await _seed(sqlite_executor)
        script = await sqlite_executor.snapshot(BackupType.DATA_ONLY)

        assert "CREATE TABLE" not in script
        await sqlite_executor.execute("DELETE FROM items WHERE id = 1;", timeout=5)
        await sqlite_executor.execute(script, timeout=5)

        count = await sqlite_executor.query("SELECT COUNT(*) AS count FROM items")
        assert count.data == {"count": 3}

    @pytest.mark.asyncio
    async def test_snapshot_with_view_and_trigger_replays(self, sqlite_executor):
        await _seed(sqlite_executor)
        await sqlite_executor.execute(
            "CREATE VIEW named_items AS SELECT name FROM items;"
            "CREATE TABLE audit (item_id INTEGER);"
            "CREATE TRIGGER items_audit AFTER INSERT ON items BEGIN INSERT INTO audit VALUES (new.id); END;",
            timeout=5,
        )
        script = await sqlite_executor.snapshot(BackupType.FULL)

        await sqlite_executor.execute(script, timeout=5)

        names = await sqlite_executor.query("SELECT name FROM named_items ORDER BY name")
        assert names.data == [{"name": "one"}, {"name": "three"}, {"name": "two"}]
        objects = await sqlite_executor.query("SELECT name FROM sqlite_master WHERE type = 'trigger'")
        assert objects.data == {"name": "items_audit"}

    @pytest.mark.asyncio
    async def test_reset_script_drops_objects_created_after_snapshot(self, sqlite_executor):
        await _seed(sqlite_executor)
        script = await sqlite_executor.snapshot(BackupType.FULL)
        await sqlite_executor.execute(
            "CREATE TABLE later (id INTEGER); CREATE VIEW later_view AS SELECT id FROM later;",
            timeout=5,
        )

        prelude = await sqlite_executor.reset_script(BackupType.FULL)
        await sqlite_executor.execute(prelude + script, timeout=5)

        objects = await sqlite_executor.query("SELECT type, name FROM sqlite_master ORDER BY name")
        assert objects.data == {"type": "table", "name": "items"}

    @pytest.mark.asyncio
    async def test_reset_script_is_empty_for_data_only(self, sqlite_executor):
        await _seed(sqlite_executor)
        assert await sqlite_executor.reset_script(BackupType.DATA_ONLY) == ""

    @pytest.mark.asyncio
    async def test_connect_creates_parent_directory(self, tmp_path):
        executor = await SQLiteStatementExecutor.connect(tmp_path / "nested" / "store.sqlite3")
        try:
            assert (tmp_path / "nested").is_dir()
            assert executor.db_type == "sqlite"
        finally:
            await executor.close()
