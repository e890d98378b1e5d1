"""
Statement executor interface for the migration system.

The migration framework never parses the scripts it runs. Every interaction
with the target store goes through a :class:`StatementExecutor`, which runs a
script under a timeout, runs a query for validation, and produces a
replayable snapshot for backups.

Timeouts are enforced here rather than in each backend: :meth:`execute`
wraps the backend call in :func:`asyncio.wait_for` and, when the deadline
passes, interrupts the in-flight statement before raising
:class:`StatementTimeoutError`.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from strata.config.logging_config import get_logger
from strata.migrations.exceptions import StatementTimeoutError
from strata.migrations.models import BackupType, QueryResult, StatementResult

log = get_logger(__name__)


class StatementExecutor(ABC):
    """Abstract executor of opaque change scripts against one target store."""

    async def execute(
        self,
        script: str,
        timeout: float,
        params: dict[str, Any] | None = None,
    ) -> StatementResult:
        """Execute a change script, bounded by ``timeout`` seconds.

        Args:
            script: Script to run. Its language is opaque to the framework.
            timeout: Deadline in seconds.
            params: Optional named parameters bound into the script.

        Returns:
            Counts reported by the backend.

        Raises:
            StatementTimeoutError: If the deadline passed; the statement was
                interrupted.
            Exception: Whatever the backend raised for a failing script.
        """
        try:
            return await asyncio.wait_for(self.run_script(script, params), timeout)
        except TimeoutError as e:
            await self.interrupt()
            raise StatementTimeoutError(f"Statement exceeded timeout of {timeout}s", timeout) from e

    async def query(self, query: str, timeout: float | None = None) -> QueryResult:
        """Run a read query. Failures are reported in the result, not raised."""
        try:
            if timeout is None:
                data = await self.run_query(query)
            else:
                data = await asyncio.wait_for(self.run_query(query), timeout)
        except TimeoutError:
            await self.interrupt()
            return QueryResult(success=False, error=f"Query exceeded timeout of {timeout}s")
        except Exception as e:
            return QueryResult(success=False, error=str(e))
        return QueryResult(success=True, data=data)

    @abstractmethod
    async def run_script(self, script: str, params: dict[str, Any] | None = None) -> StatementResult:
        """Run a change script without a deadline. Raise on failure."""
        pass

    @abstractmethod
    async def run_query(self, query: str) -> Any:
        """Run a read query and return its data. Raise on failure."""
        pass

    @abstractmethod
    async def snapshot(self, backup_type: BackupType) -> str:
        """Return a script that, replayed through :meth:`execute`, restores the
        current state of the store for the given backup type."""
        pass

    async def reset_script(self, backup_type: BackupType) -> str:
        """Return a script that clears the store's current objects before a
        snapshot of ``backup_type`` is replayed.

        It is computed at restore time, so objects created after the snapshot
        was taken are removed too. Backends whose snapshot scripts already
        clear the whole store return an empty string.
        """
        return ""

    async def interrupt(self) -> None:
        """Abort the statement currently running, if the backend supports it."""
        return None

    async def close(self) -> None:
        return None

    @property
    @abstractmethod
    def db_type(self) -> str:
        pass


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SQLiteStatementExecutor(StatementExecutor):
    """SQLite implementation on top of an ``aiosqlite`` connection.

    Query data shape: a single row is returned as a dict of column to value;
    any other row count is returned as a list of such dicts.
    """

    def __init__(self, connection: Any):
        """Initialize with an aiosqlite connection.

        Args:
            connection: aiosqlite.Connection object.
        """
        self._conn = connection

    @classmethod
    async def connect(cls, db_path: str | Path) -> "SQLiteStatementExecutor":
        import aiosqlite

        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(db_path))
        return cls(conn)

    @property
    def connection(self) -> Any:
        return self._conn

    async def run_script(self, script: str, params: dict[str, Any] | None = None) -> StatementResult:
        before = self._conn.total_changes
        if params:
            await self._conn.execute(script, params)
            await self._conn.commit()
        else:
            await self._conn.executescript(script)
            await self._conn.commit()
        changed = max(self._conn.total_changes - before, 0)
        return StatementResult(records_processed=changed, records_affected=changed)

    async def run_query(self, query: str) -> Any:
        cursor = await self._conn.execute(query)
        rows = await cursor.fetchall()
        if cursor.description is None:
            return []
        columns = [desc[0] for desc in cursor.description]
        records = [dict(zip(columns, row)) for row in rows]
        if len(records) == 1:
            return records[0]
        return records

    async def _user_objects(self) -> list[tuple[str, str]]:
        cursor = await self._conn.execute(
            "SELECT type, name FROM sqlite_master "
            "WHERE type IN ('table', 'view', 'trigger') AND name NOT LIKE 'sqlite_%'"
        )
        return [(row[0], row[1]) for row in await cursor.fetchall()]

    @staticmethod
    def _drop_statements(objects: list[tuple[str, str]]) -> list[str]:
        # Triggers and views go before tables; a dropped table takes its indexes along
        order = {"trigger": 0, "view": 1, "table": 2}
        return [
            f"DROP {kind.upper()} IF EXISTS {_quote(name)};"
            for kind, name in sorted(objects, key=lambda o: (order[o[0]], o[1]))
        ]

    async def snapshot(self, backup_type: BackupType) -> str:
        objects = await self._user_objects()
        dump = [line async for line in self._conn.iterdump()]

        if backup_type == BackupType.INCREMENTAL:
            # SQLite has no change tracking to diff against; take a full dump.
            log.info("Incremental backups are taken as full dumps on sqlite")
            backup_type = BackupType.FULL

        lines = ["PRAGMA foreign_keys=OFF;"]
        if backup_type == BackupType.DATA_ONLY:
            tables = sorted(name for kind, name in objects if kind == "table")
            lines.extend(f"DELETE FROM {_quote(t)};" for t in tables)
            lines.extend(line for line in dump if line.startswith("INSERT INTO"))
            return "\n".join(lines) + "\n"

        lines.extend(self._drop_statements(objects))
        if backup_type == BackupType.SCHEMA_ONLY:
            lines.extend(line for line in dump if line.startswith("CREATE"))
        else:
            lines.extend(line for line in dump if line not in ("BEGIN TRANSACTION;", "COMMIT;"))
        return "\n".join(lines) + "\n"

    async def reset_script(self, backup_type: BackupType) -> str:
        if backup_type == BackupType.DATA_ONLY:
            return ""
        drops = self._drop_statements(await self._user_objects())
        if not drops:
            return ""
        return "\n".join(["PRAGMA foreign_keys=OFF;", *drops]) + "\n"

    async def interrupt(self) -> None:
        try:
            await self._conn.interrupt()
        except Exception as e:
            log.warning(f"Failed to interrupt sqlite statement: {e}")

    async def close(self) -> None:
        await self._conn.close()

    @property
    def db_type(self) -> str:
        return "sqlite"

