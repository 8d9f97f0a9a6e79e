"""Structured log event names emitted by the scheduler.

Key transitions log with ``extra={"event": events.X}``.  In ``json`` log
format the value surfaces as ``extra.event``; in ``text`` format the message
is self-describing and the event is not printed.

Usage example::

    import logging
    from routinebot.core import events

    logger = logging.getLogger(__name__)
    logger.info("Cycle started", extra={"event": events.CYCLE_START})
"""

from __future__ import annotations

__all__ = [
    # Cycle lifecycle
    "CYCLE_START",
    "CYCLE_COMPLETE",
    "CYCLE_ABORT",
    "CYCLE_RATE_LIMITED",
    "RATE_LIMIT_RETRY",
    "INTERVAL_ADJUSTED",
    # Routine lifecycle
    "ROUTINE_SELECTED",
    "ROUTINE_DISPATCHED",
    "ROUTINE_SUCCEEDED",
    "ROUTINE_FAILED",
    "ROUTINE_TIMEOUT",
    # Store
    "STORE_RECONCILED",
    "STORE_FLUSH_FAILED",
    "PRIORITY_SNAPSHOT",
    # Process
    "SHUTDOWN_REQUESTED",
]

# ---------------------------------------------------------------------------
# Cycle lifecycle
# ---------------------------------------------------------------------------

#: A cycle began; carries the cycle number.
CYCLE_START: str = "CYCLE_START"

#: A cycle finished its dispatch and reconcile phases.
CYCLE_COMPLETE: str = "CYCLE_COMPLETE"

#: A cycle ended early on a non-rate-limit failure (catalog down, etc.).
CYCLE_ABORT: str = "CYCLE_ABORT"

#: A cycle ended on a rate-limit failure from the catalog.
CYCLE_RATE_LIMITED: str = "CYCLE_RATE_LIMITED"

#: A rate-limited call is about to be retried after a backoff delay.
RATE_LIMIT_RETRY: str = "RATE_LIMIT_RETRY"

#: The sleep before the next cycle was stretched or reset.
INTERVAL_ADJUSTED: str = "INTERVAL_ADJUSTED"

# ---------------------------------------------------------------------------
# Routine lifecycle
# ---------------------------------------------------------------------------

#: The selector picked a routine for this cycle's batch.
ROUTINE_SELECTED: str = "ROUTINE_SELECTED"

#: A routine was handed to the execution pipeline.
ROUTINE_DISPATCHED: str = "ROUTINE_DISPATCHED"

#: The pipeline reported a successful outcome.
ROUTINE_SUCCEEDED: str = "ROUTINE_SUCCEEDED"

#: The pipeline reported a failed outcome or raised.
ROUTINE_FAILED: str = "ROUTINE_FAILED"

#: A dispatch exceeded its timeout budget.
ROUTINE_TIMEOUT: str = "ROUTINE_TIMEOUT"

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

#: The store added or pruned entries to match the catalog.
STORE_RECONCILED: str = "STORE_RECONCILED"

#: Writing the priority document failed; in-memory state is kept.
STORE_FLUSH_FAILED: str = "STORE_FLUSH_FAILED"

#: Periodic dump of the current priorities.
PRIORITY_SNAPSHOT: str = "PRIORITY_SNAPSHOT"

# ---------------------------------------------------------------------------
# Process
# ---------------------------------------------------------------------------

#: A stop was requested by signal or by the caller.
SHUTDOWN_REQUESTED: str = "SHUTDOWN_REQUESTED"
