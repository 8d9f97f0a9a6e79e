"""SQLite database for the local execution history.

* Opens (or creates) the SQLite file next to the priority document.
* Turns on WAL journaling so ``routinebot history`` can read while a
  running scheduler writes.
* Bootstraps the schema with ``CREATE ... IF NOT EXISTS`` on every open.

Typical usage::

    from routinebot.history.database import open_db

    conn = await open_db(settings.history_database_path_resolved)
    try:
        repo = ExecutionHistoryRepository(conn)
        ...
    finally:
        await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

__all__ = ["open_db", "create_schema"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: One row per dispatched routine.
#:
#: Column notes
#: ------------
#: id               Random hex id, also sent upstream in logs.
#: failure_kind     rate_limited | transient | permanent; NULL on success.
#: duration_ms      Wall-clock duration of the dispatch.
#: executed_at      ISO-8601 UTC; rows are read newest first by this column.
#: cycle            Scheduler cycle number; NULL for ad-hoc runs.
#: directive_type   create | change | delete | execute | done; NULL if none parsed.
#: directive_target File path or command the directive acted on.
_DDL_EXECUTIONS = """\
CREATE TABLE IF NOT EXISTS executions (
    id               TEXT     NOT NULL PRIMARY KEY,
    routine_id       TEXT     NOT NULL,
    routine_name     TEXT     NOT NULL DEFAULT '',
    success          INTEGER  NOT NULL,
    message          TEXT     NOT NULL DEFAULT '',
    error            TEXT,
    failure_kind     TEXT,
    duration_ms      INTEGER  NOT NULL DEFAULT 0,
    executed_at      TEXT     NOT NULL,
    cycle            INTEGER,
    directive_type   TEXT,
    directive_target TEXT
)"""

_DDL_EXECUTIONS_INDEX = """\
CREATE INDEX IF NOT EXISTS idx_executions_routine_time
    ON executions (routine_id, executed_at DESC)"""


async def open_db(path: Path | str) -> aiosqlite.Connection:
    """Open (or create) the history database and bootstrap its schema.

    Args:
        path: SQLite file path.  ``":memory:"`` is accepted for tests.

    Returns:
        An open :class:`aiosqlite.Connection` with ``row_factory`` set to
        :class:`aiosqlite.Row`.  The caller closes it.

    Raises:
        aiosqlite.OperationalError: If the file cannot be opened or created.
    """
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening history database at %s", target)
    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    cursor = await conn.execute("PRAGMA journal_mode=WAL")
    row = await cursor.fetchone()
    if row is None or row[0] != "wal":
        logger.debug("History database journal mode is %r.", row[0] if row else None)

    await create_schema(conn)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create the history tables if they do not exist.  Idempotent."""
    await conn.execute(_DDL_EXECUTIONS)
    await conn.execute(_DDL_EXECUTIONS_INDEX)
    await conn.commit()
