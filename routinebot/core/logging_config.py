"""Routinebot logging configuration.

:func:`configure_logging` is called once by the CLI before anything else
runs.  Library modules only ever create a module-level logger::

    import logging
    logger = logging.getLogger(__name__)

Two output formats are supported:

``text``
    ``2026-10-19 08:00:00 INFO     [3fa2c1d0] routinebot.orchestrator.cycle: ...``
``json``
    One object per line with ``ts``, ``level``, ``logger``, ``message`` and an
    ``extra`` object carrying ``cycle_id``, ``event`` and any other
    ``extra={...}`` values passed at the call site.

Level and format fall back to the ``LOG_LEVEL`` / ``LOG_FORMAT`` environment
variables when not passed explicitly.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = ["configure_logging", "JsonFormatter", "CYCLE_ID_CTX", "CycleContextFilter"]

logger = logging.getLogger(__name__)

#: Short hex id of the scheduling cycle currently running.  Set by
#: :meth:`~routinebot.orchestrator.cycle.CycleOrchestrator.run_cycle`; dispatch
#: tasks created inside the cycle inherit it.  ``"-"`` outside any cycle.
CYCLE_ID_CTX: ContextVar[str] = ContextVar("cycle_id", default="-")

_VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_VALID_FORMATS = frozenset({"text", "json"})

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(cycle_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty at INFO; only shown when the root level is DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


class CycleContextFilter(logging.Filter):
    """Copy :data:`CYCLE_ID_CTX` onto each record as ``record.cycle_id``.

    Installed on the handler so the attribute exists before any formatter
    runs, including for records propagated from third-party loggers.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.cycle_id = CYCLE_ID_CTX.get()
        return True


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: DEBUG/INFO/WARNING/ERROR/CRITICAL.  Defaults to ``$LOG_LEVEL``
            then ``"INFO"``.
        fmt: ``"text"`` or ``"json"``.  Defaults to ``$LOG_FORMAT`` then
            ``"text"``.
        force: Replace existing root handlers.  Without it an already
            configured root logger only has its level updated.

    Raises:
        ValueError: If *level* or *fmt* is not recognised.
    """
    resolved_level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    resolved_fmt = (fmt or os.environ.get("LOG_FORMAT") or "text").lower()

    if resolved_level not in _VALID_LEVELS:
        raise ValueError(
            f"Unknown log level {resolved_level!r}; expected one of {sorted(_VALID_LEVELS)}"
        )
    if resolved_fmt not in _VALID_FORMATS:
        raise ValueError(
            f"Unknown log format {resolved_fmt!r}; expected one of {sorted(_VALID_FORMATS)}"
        )

    root = logging.getLogger()
    if root.handlers and not force:
        root.setLevel(resolved_level)
        return

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(CycleContextFilter())
    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT))

    root.setLevel(resolved_level)
    root.addHandler(handler)

    quiet_level = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON line.

    Output shape::

        {
            "ts": "2026-10-19T08:00:00.123Z",
            "level": "INFO",
            "logger": "routinebot.orchestrator.cycle",
            "message": "Cycle 4 complete: 2 dispatched, 2 succeeded",
            "extra": {"cycle_id": "3fa2c1d0", "event": "CYCLE_COMPLETE"}
        }

    ``exc_info`` and ``stack_info`` keys are added only when present.
    Values that are not JSON-native are rendered with ``str()``.
    """

    #: Standard :class:`logging.LogRecord` attributes kept out of ``extra``.
    _RECORD_ATTRS: frozenset[str] = frozenset(
        vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
        | {"message", "asctime", "taskName"}
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        record.message = record.getMessage()
        created = datetime.fromtimestamp(record.created, tz=UTC)

        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "extra": {
                key: value
                for key, value in record.__dict__.items()
                if key not in self._RECORD_ATTRS
            },
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(payload, default=str)
