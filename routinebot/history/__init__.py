"""SQLite-backed local history of routine executions."""

from routinebot.history.database import create_schema, open_db
from routinebot.history.repository import (
    MAX_ROWS,
    ExecutionHistoryRepository,
    HistorySummary,
    RoutineHistoryStats,
)

__all__ = [
    "open_db",
    "create_schema",
    "MAX_ROWS",
    "ExecutionHistoryRepository",
    "HistorySummary",
    "RoutineHistoryStats",
]
