"""Routine catalog: where routines come from and where outcomes are reported.

:class:`RoutineCatalog` is the interface the cycle orchestrator depends on.
:class:`HttpRoutineCatalog` talks to the service:

* ``GET  /api/routines?active=true`` → ``{"success": true, "data": [routine, ...]}``
* ``POST /api/routine-executions``   ← ``{routineId, routineName, success,
  message, error, duration, executedAt}``

Fetch failure handling
~~~~~~~~~~~~~~~~~~~~~~
* Rate-limit and permanent failures propagate, so the orchestrator can
  adapt its cadence or log the abort.
* Transient failures (service down, timeouts, exhausted 5xx retries) return
  the last list fetched successfully, or ``[]`` if none was fetched yet.
* Entries that do not validate as a :class:`~routinebot.core.models.Routine`
  are skipped with a warning; one bad entry never hides the others.

Typical usage::

    async with ServiceHttpClient(settings.api_base_url, token=settings.api_token) as http:
        catalog = HttpRoutineCatalog(http)
        routines = await catalog.fetch_active()
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Final

from pydantic import ValidationError

from routinebot.core.exceptions import ServiceUnavailableError
from routinebot.core.models import ExecutionRecord, Routine
from routinebot.service.http_client import ServiceHttpClient

__all__ = ["RoutineCatalog", "HttpRoutineCatalog", "parse_routines"]

logger = logging.getLogger(__name__)

ROUTINES_PATH: Final[str] = "/api/routines"
EXECUTIONS_PATH: Final[str] = "/api/routine-executions"


class RoutineCatalog(abc.ABC):
    """Source of active routines and sink for execution reports."""

    @abc.abstractmethod
    async def fetch_active(self) -> list[Routine]:
        """Return the currently active routines."""

    @abc.abstractmethod
    async def report_outcome(self, record: ExecutionRecord) -> None:
        """Send *record* upstream.  May raise; callers log and carry on."""


def parse_routines(payload: Any) -> list[Routine]:
    """Extract routines from a ``{success, data}`` envelope or a bare list.

    ``success: false`` or a missing ``data`` key yields an empty list.
    Invalid or inactive entries are skipped.
    """
    if isinstance(payload, dict):
        if not payload.get("success", True):
            logger.info("Catalog answered success=false: %s", payload.get("message", ""))
            return []
        items = payload.get("data") or []
    elif isinstance(payload, list):
        items = payload
    else:
        logger.warning("Unexpected catalog payload type %s.", type(payload).__name__)
        return []

    if not isinstance(items, list):
        logger.warning("Catalog 'data' is %s, expected a list.", type(items).__name__)
        return []

    routines: list[Routine] = []
    for index, item in enumerate(items):
        try:
            routine = Routine.model_validate(item)
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed routine at index %d: %d validation errors.",
                index,
                exc.error_count(),
            )
            continue
        if routine.is_active:
            routines.append(routine)
    return routines


class HttpRoutineCatalog(RoutineCatalog):
    """:class:`RoutineCatalog` backed by the service's REST endpoints.

    Args:
        client: Open :class:`ServiceHttpClient` bound to the service.
        timeout: Per-request timeout override in seconds.
    """

    def __init__(self, client: ServiceHttpClient, *, timeout: float | None = None) -> None:
        self._client = client
        self._timeout = timeout
        self._last_good: list[Routine] = []

    async def fetch_active(self) -> list[Routine]:
        try:
            payload = await self._client.get_json(
                ROUTINES_PATH, params={"active": "true"}, timeout=self._timeout
            )
        except ServiceUnavailableError as exc:
            logger.warning(
                "Catalog unavailable (%s); using %d cached routines.",
                exc,
                len(self._last_good),
            )
            return list(self._last_good)

        routines = parse_routines(payload)
        if not routines:
            logger.info("No active routines available.")
        self._last_good = routines
        return list(routines)

    async def report_outcome(self, record: ExecutionRecord) -> None:
        await self._client.post_json(
            EXECUTIONS_PATH,
            {
                "routineId": record.routine_id,
                "routineName": record.routine_name,
                "success": record.success,
                "message": record.message,
                "error": record.error,
                "duration": record.duration_ms,
                "executedAt": record.executed_at.isoformat(),
            },
            timeout=self._timeout,
        )
        logger.debug("Reported execution %s of routine %s.", record.id, record.routine_id)
