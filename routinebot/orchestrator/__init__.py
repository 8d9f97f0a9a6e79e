"""Scheduling cycles, rate-limit backoff and lifetime metrics.

Public API
----------
* :class:`~routinebot.orchestrator.cycle.CycleOrchestrator`: runs one cycle
  (:meth:`run_cycle`) or loops until stopped (:meth:`run_forever`).
* :func:`~routinebot.orchestrator.backoff.execute_with_retry`: retry a
  coroutine on rate-limit failures with exponential backoff and jitter.
* :func:`~routinebot.orchestrator.backoff.classify_failure`: map an exception
  to a :class:`~routinebot.core.models.FailureKind`.
* :func:`~routinebot.orchestrator.backoff.suggest_optimal_interval`: stretch
  the cycle interval after consecutive rate-limited cycles.
* :class:`~routinebot.orchestrator.metrics.LifetimeStats` and
  :func:`~routinebot.orchestrator.metrics.write_stats_file`: cumulative
  cross-cycle statistics.

:mod:`routinebot.orchestrator.scheduler` (process wiring, signal handling) is
imported explicitly by the CLI and is not re-exported here.
"""

from routinebot.orchestrator.backoff import (
    RATE_LIMIT_MARKER,
    RetryPolicy,
    calculate_delay,
    classify_failure,
    execute_with_retry,
    is_rate_limit_error,
    suggest_optimal_interval,
)
from routinebot.orchestrator.cycle import (
    CycleOrchestrator,
    CyclePhase,
    CycleReport,
    CycleState,
    DispatchResult,
)
from routinebot.orchestrator.metrics import LifetimeStats, RoutineLifetimeStats, write_stats_file

__all__ = [
    # Backoff
    "RATE_LIMIT_MARKER",
    "RetryPolicy",
    "calculate_delay",
    "classify_failure",
    "execute_with_retry",
    "is_rate_limit_error",
    "suggest_optimal_interval",
    # Cycle orchestrator
    "CycleOrchestrator",
    "CyclePhase",
    "CycleReport",
    "CycleState",
    "DispatchResult",
    # Lifetime metrics
    "LifetimeStats",
    "RoutineLifetimeStats",
    "write_stats_file",
]
