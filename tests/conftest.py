import asyncio
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from strata.migrations.checksum import seal
from strata.migrations.ledger import HistoryLedger
from strata.migrations.manager import MigrationManager
from strata.migrations.models import BackupType, MigrationStep, StatementResult, VersionedMigrationSet
from strata.migrations.statement_executor import SQLiteStatementExecutor, StatementExecutor


@pytest.fixture(scope="session", autouse=True)
def _silence_aiosqlite_logging():
    """Reduce noisy aiosqlite logs during tests."""
    import logging

    for name in (
        "aiosqlite",
        "aiosqlite.core",
        "aiosqlite.cursor",
        "aiosqlite.connection",
    ):
        logger = logging.getLogger(name)
        logger.setLevel(logging.ERROR)
        logger.propagate = False


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from the user's settings file and STRATA_* variables."""
    import os

    from strata.config.environment import Environment

    for key in list(os.environ):
        if key.startswith("STRATA_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("STRATA_SETTINGS", str(tmp_path / "no-settings.yaml"))
    Environment.clear()
    yield
    Environment.clear()


class FakeStatementExecutor(StatementExecutor):
    """Deterministic statement executor recording every call.

    Scripts succeed with one affected record unless scripted otherwise:

    - ``fail(script, *errors)`` queues exceptions raised by successive runs
      (``None`` in the queue means that run succeeds)
    - ``results[script]`` sets the StatementResult (a list is consumed in order)
    - ``delays[script]`` makes the script sleep before finishing
    - ``query_results[query]`` / ``query_errors[query]`` script queries
    """

    def __init__(self):
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, list[Exception | None]] = {}
        self.results: dict[str, StatementResult | list[StatementResult]] = {}
        self.delays: dict[str, float] = {}
        self.query_results: dict[str, Any] = {}
        self.query_errors: dict[str, str] = {}
        self.snapshot_script = "-- snapshot\n"
        self.snapshot_error: Exception | None = None
        self.interrupts = 0

    def fail(self, script: str, *errors: Exception | None) -> None:
        self.failures.setdefault(script, []).extend(errors)

    @property
    def executed(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "execute"]

    async def run_script(self, script: str, params: dict[str, Any] | None = None) -> StatementResult:
        self.calls.append(("execute", script, params))
        if script in self.delays:
            await asyncio.sleep(self.delays[script])
        queue = self.failures.get(script)
        if queue:
            error = queue.pop(0)
            if error is not None:
                raise error
        result = self.results.get(script)
        if isinstance(result, list):
            return result.pop(0)
        if result is None:
            return StatementResult(records_processed=1, records_affected=1)
        return result

    async def run_query(self, query: str) -> Any:
        self.calls.append(("query", query))
        if query in self.query_errors:
            raise RuntimeError(self.query_errors[query])
        return self.query_results.get(query, [{"ok": 1}])

    async def snapshot(self, backup_type: BackupType) -> str:
        self.calls.append(("snapshot", backup_type))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return self.snapshot_script

    async def interrupt(self) -> None:
        self.interrupts += 1

    @property
    def db_type(self) -> str:
        return "fake"


def _make_set(
    version: str,
    dependencies: list[str] | tuple[str, ...] = (),
    steps: list[MigrationStep] | None = None,
    **kwargs: Any,
) -> VersionedMigrationSet:
    if steps is None:
        steps = [MigrationStep(id=f"step_{version}", script=f"-- apply {version}")]
    migration_set = VersionedMigrationSet(
        version=version,
        description=kwargs.pop("description", f"Migration {version}"),
        dependencies=list(dependencies),
        steps=steps,
        **kwargs,
    )
    return seal(migration_set)


@pytest.fixture
def make_set():
    """Factory for sealed migration sets."""
    return _make_set


@pytest.fixture
def fake_executor():
    return FakeStatementExecutor()


@pytest.fixture
def ledger(tmp_path):
    return HistoryLedger(tmp_path / "history.json")


@pytest.fixture
def manager(fake_executor, ledger, tmp_path):
    return MigrationManager(fake_executor, ledger, tmp_path / "backups", retry_delay=0)


@pytest_asyncio.fixture
async def sqlite_executor():
    """SQLite executor over an in-memory database."""
    conn = await aiosqlite.connect(":memory:")
    executor = SQLiteStatementExecutor(conn)
    try:
        yield executor
    finally:
        await conn.close()
