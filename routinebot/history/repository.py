"""Execution history repository.

:class:`ExecutionHistoryRepository` is the single data-access object for the
``executions`` table.  The scheduler writes one row per dispatch.  Two kinds
of readers use the table:

* the generation pipeline asks for :meth:`~ExecutionHistoryRepository.dedup_hints`
  so the prompt can steer away from repeating the last few runs;
* the ``history`` and ``stats`` CLI commands use
  :meth:`~ExecutionHistoryRepository.recent` and
  :meth:`~ExecutionHistoryRepository.summary`.

The table is capped at :data:`MAX_ROWS` rows; the oldest rows are deleted on
insert.

Typical usage::

    conn = await open_db(path)
    repo = ExecutionHistoryRepository(conn)
    await repo.record(record)
    hints = await repo.dedup_hints("abc123", limit=3)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Final

import aiosqlite

from routinebot.core.exceptions import StorageError
from routinebot.core.models import ExecutionRecord, FailureKind

__all__ = [
    "MAX_ROWS",
    "RoutineHistoryStats",
    "HistorySummary",
    "ExecutionHistoryRepository",
]

logger = logging.getLogger(__name__)

#: Oldest rows beyond this count are deleted on every insert.
MAX_ROWS: Final[int] = 1000

_COLUMNS = (
    "id, routine_id, routine_name, success, message, error, failure_kind, "
    "duration_ms, executed_at, cycle, directive_type, directive_target"
)


@dataclass
class RoutineHistoryStats:
    """Per-routine counters inside a :class:`HistorySummary`."""

    name: str
    executions: int = 0
    successes: int = 0
    failures: int = 0
    avg_duration_ms: float = 0.0


@dataclass
class HistorySummary:
    """Aggregate view of the history over a time window.

    Attributes:
        days: Window length the summary covers.
        total: Executions in the window.
        succeeded: Successful executions.
        failed: Failed executions.
        success_rate: Percentage of successes, rounded to two decimals.
        average_duration_ms: Mean duration over rows with a non-zero duration.
        last_execution: Timestamp of the newest row in the window.
        routines: Counters keyed by routine id.
    """

    days: int
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    success_rate: float = 0.0
    average_duration_ms: int = 0
    last_execution: datetime | None = None
    routines: dict[str, RoutineHistoryStats] = field(default_factory=dict)


def _row_to_record(row: aiosqlite.Row) -> ExecutionRecord:
    return ExecutionRecord(
        id=row["id"],
        routine_id=row["routine_id"],
        routine_name=row["routine_name"],
        success=bool(row["success"]),
        message=row["message"],
        error=row["error"],
        failure_kind=FailureKind(row["failure_kind"]) if row["failure_kind"] else None,
        duration_ms=row["duration_ms"],
        executed_at=datetime.fromisoformat(row["executed_at"]),
        cycle=row["cycle"],
        directive_type=row["directive_type"],
        directive_target=row["directive_target"],
    )


class ExecutionHistoryRepository:
    """Data-access object for the ``executions`` table.

    Owns no connection lifecycle; see
    :func:`~routinebot.history.database.open_db`.

    Args:
        conn: Open :class:`aiosqlite.Connection` with the schema in place.
        max_rows: Row cap enforced on insert.
    """

    def __init__(self, conn: aiosqlite.Connection, *, max_rows: int = MAX_ROWS) -> None:
        self._conn = conn
        self._max_rows = max_rows

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def record(self, record: ExecutionRecord) -> None:
        """Insert *record* and trim the table to the row cap.

        Raises:
            StorageError: If SQLite rejects the write.
        """
        try:
            await self._conn.execute(
                f"INSERT OR REPLACE INTO executions ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.routine_id,
                    record.routine_name,
                    int(record.success),
                    record.message,
                    record.error,
                    str(record.failure_kind) if record.failure_kind else None,
                    record.duration_ms,
                    record.executed_at.astimezone(UTC).isoformat(),
                    record.cycle,
                    record.directive_type,
                    record.directive_target,
                ),
            )
            await self._conn.execute(
                "DELETE FROM executions WHERE id NOT IN "
                "(SELECT id FROM executions ORDER BY executed_at DESC LIMIT ?)",
                (self._max_rows,),
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not record execution {record.id}: {exc}") from exc
        logger.debug("Recorded execution %s of routine %s.", record.id, record.routine_id)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def recent(
        self,
        limit: int = 20,
        routine_id: str | None = None,
    ) -> list[ExecutionRecord]:
        """Return up to *limit* records, newest first, optionally for one routine."""
        if routine_id is None:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM executions ORDER BY executed_at DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM executions WHERE routine_id = ? "
                "ORDER BY executed_at DESC LIMIT ?",
                (routine_id, limit),
            )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def summary(self, days: int = 7, *, now: datetime | None = None) -> HistorySummary:
        """Aggregate the records of the last *days* days."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM executions WHERE executed_at > ? "
            "ORDER BY executed_at DESC",
            (cutoff.astimezone(UTC).isoformat(),),
        )
        records = [_row_to_record(row) for row in await cursor.fetchall()]

        result = HistorySummary(days=days, total=len(records))
        if not records:
            return result

        result.succeeded = sum(1 for r in records if r.success)
        result.failed = result.total - result.succeeded
        result.success_rate = round(result.succeeded / result.total * 100, 2)
        result.last_execution = records[0].executed_at

        durations = [r.duration_ms for r in records if r.duration_ms > 0]
        if durations:
            result.average_duration_ms = round(sum(durations) / len(durations))

        per_routine_durations: dict[str, list[int]] = {}
        for r in records:
            stats = result.routines.setdefault(
                r.routine_id, RoutineHistoryStats(name=r.routine_name or r.routine_id)
            )
            stats.executions += 1
            if r.success:
                stats.successes += 1
            else:
                stats.failures += 1
            if r.duration_ms > 0:
                per_routine_durations.setdefault(r.routine_id, []).append(r.duration_ms)
        for routine_id, values in per_routine_durations.items():
            result.routines[routine_id].avg_duration_ms = sum(values) / len(values)
        return result

    async def dedup_hints(self, routine_id: str, limit: int = 3) -> list[str]:
        """Describe the last *limit* executions of *routine_id*, one line each.

        Example line::

            2026-10-19 08:00 UTC success: create notes/todo.md (Executed successfully)
        """
        if limit <= 0:
            return []
        hints: list[str] = []
        for record in await self.recent(limit, routine_id=routine_id):
            when = record.executed_at.astimezone(UTC).strftime("%Y-%m-%d %H:%M UTC")
            status = "success" if record.success else "failure"
            action = ""
            if record.directive_type:
                action = record.directive_type
                if record.directive_target:
                    action += f" {record.directive_target}"
                action += " "
            detail = record.error if not record.success and record.error else record.message
            hints.append(f"{when} {status}: {action}({detail})")
        return hints
