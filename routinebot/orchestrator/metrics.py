"""Cumulative cross-cycle statistics for Routinebot.

Tracks lifetime totals across all scheduling cycles and provides two output
paths:

1. **Log summary**: :meth:`LifetimeStats.format_summary` returns a
   human-readable string suitable for a single ``logger.info()`` call.
2. **JSON stats file**: :func:`write_stats_file` serialises
   :meth:`LifetimeStats.as_dict` to a file (default
   ``/tmp/routinebot_stats.json``, overridable via ``ROUTINEBOT_STATS_PATH``).

The stats file is rewritten after every cycle, cancelled cycles included.
Write errors are logged at WARNING level and never propagated.

Typical usage::

    from routinebot.orchestrator.metrics import LifetimeStats, write_stats_file

    stats = LifetimeStats()

    # After each cycle:
    stats.update(report)
    write_stats_file(stats)
    logger.debug("%s", stats.format_summary())
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from routinebot.orchestrator.cycle import CycleReport

__all__ = [
    "STATS_PATH",
    "RoutineLifetimeStats",
    "LifetimeStats",
    "write_stats_file",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stats file path constant
# ---------------------------------------------------------------------------

#: Destination for the JSON stats snapshot.  Override via the
#: ``ROUTINEBOT_STATS_PATH`` environment variable if ``/tmp`` is not writable.
STATS_PATH: str = os.environ.get("ROUTINEBOT_STATS_PATH", "/tmp/routinebot_stats.json")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class RoutineLifetimeStats:
    """Accumulated counters for a single routine.

    Attributes:
        routine_id: Routine identifier.
        name: Last known routine name.
        dispatched: Dispatches that completed (successfully or not).
        succeeded: Dispatches whose outcome was successful.
        failed: Dispatches whose outcome was a failure.
        total_duration_ms: Sum of dispatch durations.
    """

    routine_id: str
    name: str = ""
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    total_duration_ms: int = 0

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.dispatched if self.dispatched else 0.0


@dataclass
class LifetimeStats:
    """Cumulative statistics accumulated across all completed cycles.

    Attributes:
        cycles_run: Total number of cycles, including failed and cancelled ones.
        rate_limited_cycles: Cycles that failed on a rate limit.
        failed_cycles: Cycles that failed for any other reason.
        cancelled_cycles: Cycles cut short by a stop request.
        total_dispatched: Lifetime number of completed dispatches.
        total_succeeded: Lifetime number of successful dispatches.
        total_failed: Lifetime number of failed dispatches.
    """

    cycles_run: int = 0
    rate_limited_cycles: int = 0
    failed_cycles: int = 0
    cancelled_cycles: int = 0
    total_dispatched: int = 0
    total_succeeded: int = 0
    total_failed: int = 0

    # --- private (excluded from repr for brevity) ---
    _start_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _started_at: datetime = field(
        default_factory=lambda: datetime.now(UTC),
        repr=False,
    )
    _routines: dict[str, RoutineLifetimeStats] = field(
        default_factory=dict,
        repr=False,
    )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def uptime_s(self) -> float:
        """Seconds since this :class:`LifetimeStats` instance was created."""
        return time.monotonic() - self._start_monotonic

    @property
    def routines(self) -> dict[str, RoutineLifetimeStats]:
        """Per-routine lifetime stats, keyed by routine id."""
        return self._routines

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update(self, report: CycleReport) -> None:
        """Accumulate a finished cycle into lifetime totals.

        Args:
            report: The cycle's report from
                :meth:`~routinebot.orchestrator.cycle.CycleOrchestrator.run_cycle`.
        """
        self.cycles_run += 1
        if report.cancelled:
            self.cancelled_cycles += 1
        elif report.rate_limited:
            self.rate_limited_cycles += 1
        elif report.failure is not None:
            self.failed_cycles += 1

        for result in report.results:
            routine_id = result.routine.id
            if routine_id not in self._routines:
                self._routines[routine_id] = RoutineLifetimeStats(routine_id=routine_id)
            r = self._routines[routine_id]
            r.name = result.routine.name or r.name
            r.dispatched += 1
            r.total_duration_ms += result.duration_ms
            if result.outcome.success:
                r.succeeded += 1
                self.total_succeeded += 1
            else:
                r.failed += 1
                self.total_failed += 1
            self.total_dispatched += 1

    # ------------------------------------------------------------------
    # Serialisation / formatting
    # ------------------------------------------------------------------

    def format_summary(self) -> str:
        """Return a human-readable multi-line lifetime summary for logging.

        Example output::

            lifetime stats | uptime: 0h14m22s | cycles=8 rate_limited=1 failed=0 cancelled=0
              dispatched=21 succeeded=19 failed=2
              r-1 (Tidy docs): dispatched=9 succeeded=9 failed=0
              r-2 (Lint): dispatched=12 succeeded=10 failed=2
        """
        hours, rem = divmod(int(self.uptime_s), 3600)
        minutes, seconds = divmod(rem, 60)

        lines = [
            f"lifetime stats | uptime: {hours}h{minutes:02d}m{seconds:02d}s | "
            f"cycles={self.cycles_run} rate_limited={self.rate_limited_cycles} "
            f"failed={self.failed_cycles} cancelled={self.cancelled_cycles}",
            f"  dispatched={self.total_dispatched} succeeded={self.total_succeeded} "
            f"failed={self.total_failed}",
        ]
        for r in sorted(self._routines.values(), key=lambda x: x.routine_id):
            label = f"{r.routine_id} ({r.name})" if r.name else r.routine_id
            lines.append(
                f"  {label}: dispatched={r.dispatched} succeeded={r.succeeded} failed={r.failed}"
            )
        return "\n".join(lines)

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of lifetime stats.

        The ``started_at`` key is an ISO-8601 string in UTC.
        ``uptime_s`` is rounded to one decimal place.
        """
        return {
            "started_at": self._started_at.isoformat(),
            "uptime_s": round(self.uptime_s, 1),
            "cycles_run": self.cycles_run,
            "rate_limited_cycles": self.rate_limited_cycles,
            "failed_cycles": self.failed_cycles,
            "cancelled_cycles": self.cancelled_cycles,
            "total_dispatched": self.total_dispatched,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "routines": {
                rid: {
                    "name": r.name,
                    "dispatched": r.dispatched,
                    "succeeded": r.succeeded,
                    "failed": r.failed,
                    "average_duration_ms": round(r.average_duration_ms, 1),
                }
                for rid, r in sorted(self._routines.items())
            },
        }


# ---------------------------------------------------------------------------
# Stats file writer
# ---------------------------------------------------------------------------


def write_stats_file(
    stats: LifetimeStats,
    path: str = STATS_PATH,
) -> None:
    """Write a JSON snapshot of *stats* to *path*.

    Errors are logged at ``WARNING`` level and never propagated.

    Args:
        stats: Current :class:`LifetimeStats` instance to serialise.
        path: Destination file path.  Defaults to :data:`STATS_PATH`.
    """
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(stats.as_dict(), fh, indent=2)
    except OSError:
        logger.warning("Failed to write stats file '%s'.", path, exc_info=True)
