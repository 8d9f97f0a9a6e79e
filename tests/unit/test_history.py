"""Unit tests for the local execution history (aiosqlite)."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from routinebot.core.exceptions import StorageError
from routinebot.core.models import ExecutionRecord, FailureKind
from routinebot.history.database import open_db
from routinebot.history.repository import ExecutionHistoryRepository

T0 = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)


def _record(
    n: int,
    routine_id: str = "r1",
    *,
    success: bool = True,
    when: datetime | None = None,
    duration_ms: int = 100,
    directive: tuple[str, str] | None = ("create", "notes/todo.md"),
) -> ExecutionRecord:
    return ExecutionRecord(
        id=f"e{n}",
        routine_id=routine_id,
        routine_name=f"Routine {routine_id}",
        success=success,
        message="Created notes/todo.md" if success else "create failed",
        error=None if success else "disk full",
        failure_kind=None if success else FailureKind.PERMANENT,
        duration_ms=duration_ms,
        executed_at=when or T0 + timedelta(minutes=n),
        cycle=n,
        directive_type=directive[0] if directive else None,
        directive_target=directive[1] if directive else None,
    )


@pytest.fixture()
async def conn() -> AsyncGenerator[aiosqlite.Connection, None]:
    connection = await open_db(":memory:")
    yield connection
    await connection.close()


@pytest.fixture()
def repo(conn: aiosqlite.Connection) -> ExecutionHistoryRepository:
    return ExecutionHistoryRepository(conn)


class TestSchema:
    async def test_open_db_creates_file_and_table(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "history.db"
        connection = await open_db(path)
        try:
            cursor = await connection.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='executions'"
            )
            assert await cursor.fetchone() is not None
        finally:
            await connection.close()
        assert path.exists()

    async def test_open_db_is_idempotent(self, tmp_path: Path) -> None:
        path = tmp_path / "history.db"
        for _ in range(2):
            connection = await open_db(path)
            await connection.close()


class TestRecordAndRecent:
    async def test_round_trip(self, repo: ExecutionHistoryRepository) -> None:
        original = _record(1, success=False)
        await repo.record(original)
        [loaded] = await repo.recent()
        assert loaded == original

    async def test_newest_first_and_limit(self, repo: ExecutionHistoryRepository) -> None:
        for n in range(5):
            await repo.record(_record(n))
        records = await repo.recent(limit=3)
        assert [r.id for r in records] == ["e4", "e3", "e2"]

    async def test_filter_by_routine(self, repo: ExecutionHistoryRepository) -> None:
        await repo.record(_record(1, "a"))
        await repo.record(_record(2, "b"))
        assert [r.id for r in await repo.recent(routine_id="a")] == ["e1"]

    async def test_row_cap(self, conn: aiosqlite.Connection) -> None:
        repo = ExecutionHistoryRepository(conn, max_rows=3)
        for n in range(6):
            await repo.record(_record(n))
        records = await repo.recent(limit=100)
        assert [r.id for r in records] == ["e5", "e4", "e3"]

    async def test_write_failure_raises_storage_error(self, conn: aiosqlite.Connection) -> None:
        repo = ExecutionHistoryRepository(conn)
        await conn.execute("DROP TABLE executions")
        with pytest.raises(StorageError):
            await repo.record(_record(1))


class TestSummary:
    async def test_empty(self, repo: ExecutionHistoryRepository) -> None:
        summary = await repo.summary(7, now=T0)
        assert summary.total == 0
        assert summary.success_rate == 0.0
        assert summary.last_execution is None

    async def test_aggregates_window(self, repo: ExecutionHistoryRepository) -> None:
        await repo.record(_record(1, "a", duration_ms=100))
        await repo.record(_record(2, "a", success=False, duration_ms=300))
        await repo.record(_record(3, "b", duration_ms=0))
        await repo.record(_record(4, "b", when=T0 - timedelta(days=30)))

        summary = await repo.summary(7, now=T0 + timedelta(hours=1))

        assert summary.total == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.success_rate == pytest.approx(66.67)
        assert summary.average_duration_ms == 200
        assert summary.last_execution == T0 + timedelta(minutes=3)
        assert summary.routines["a"].executions == 2
        assert summary.routines["a"].failures == 1
        assert summary.routines["a"].avg_duration_ms == pytest.approx(200.0)
        assert summary.routines["b"].executions == 1


class TestDedupHints:
    async def test_hints_describe_last_runs(self, repo: ExecutionHistoryRepository) -> None:
        await repo.record(_record(1))
        await repo.record(_record(2, success=False, directive=("execute", "npm test")))
        await repo.record(_record(3, directive=None))
        await repo.record(_record(4, "other"))

        hints = await repo.dedup_hints("r1", limit=2)

        assert hints == [
            "2026-10-19 08:03 UTC success: (Created notes/todo.md)",
            "2026-10-19 08:02 UTC failure: execute npm test (disk full)",
        ]

    async def test_zero_limit(self, repo: ExecutionHistoryRepository) -> None:
        await repo.record(_record(1))
        assert await repo.dedup_hints("r1", limit=0) == []

    async def test_unknown_routine(self, repo: ExecutionHistoryRepository) -> None:
        assert await repo.dedup_hints("ghost") == []
