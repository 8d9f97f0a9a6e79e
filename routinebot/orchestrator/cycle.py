"""Cycle orchestrator: the fetch → select → dispatch → reconcile → sleep loop.

One cycle
~~~~~~~~~
1. **Fetch** the active routines from the catalog.  An empty list skips
   straight to sleeping at the configured base interval.
2. **Reconcile** the priority store with the fetched routines.
3. **Select** a batch of up to ``max_executions_per_cycle`` routines.  Every
   pick is reserved in the store immediately, so it cannot be picked twice.
4. **Dispatch** the batch concurrently through the execution pipeline.  Each
   dispatch has its own timeout; a failure or timeout becomes a failed
   :class:`~routinebot.core.models.Outcome` and never cancels its siblings.
5. **Reconcile outcomes**: commit each outcome to the store, record it in
   local history and report it to the catalog.
6. **Adapt cadence**: a rate-limited fetch or selection bumps the consecutive
   error counter and stretches the interval via
   :func:`~routinebot.orchestrator.backoff.suggest_optimal_interval`; any
   other cycle resets both.

Stopping
~~~~~~~~
:meth:`CycleOrchestrator.request_stop` wakes every suspension point at once:
the catalog fetch, the dispatch wait and the inter-cycle sleep.  In-flight
dispatches are cancelled, given at most ``shutdown_grace_period`` seconds to
unwind, and their results are discarded.

Typical usage::

    orchestrator = CycleOrchestrator(catalog, pipeline, store, selector, history, settings)
    loop.add_signal_handler(signal.SIGTERM, orchestrator.request_stop)
    await orchestrator.run_forever()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, TypeVar

from routinebot.core import events
from routinebot.core.exceptions import DispatchTimeoutError, OrchestratorError
from routinebot.core.logging_config import CYCLE_ID_CTX
from routinebot.core.models import ExecutionRecord, FailureKind, Outcome, Routine
from routinebot.core.settings import Settings
from routinebot.orchestrator.backoff import classify_failure, suggest_optimal_interval

if TYPE_CHECKING:
    from routinebot.history.repository import ExecutionHistoryRepository
    from routinebot.pipeline.pipeline import ExecutionPipeline
    from routinebot.priorities.selector import Selector
    from routinebot.priorities.store import PriorityStore
    from routinebot.service.catalog import RoutineCatalog

__all__ = [
    "CyclePhase",
    "CycleState",
    "DispatchResult",
    "CycleReport",
    "CycleOrchestrator",
    "MAX_ADAPTIVE_INTERVAL",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Upper bound on the stretched interval, in seconds (6 hours).
MAX_ADAPTIVE_INTERVAL: Final[int] = 6 * 3600


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _StopRequested(Exception):
    """Internal: a suspension point was woken by :meth:`CycleOrchestrator.request_stop`."""


# ---------------------------------------------------------------------------
# State and reports
# ---------------------------------------------------------------------------


class CyclePhase(StrEnum):
    IDLE = "idle"
    FETCHING_ROUTINES = "fetching_routines"
    SELECTING_BATCH = "selecting_batch"
    DISPATCHING = "dispatching"
    RECONCILING = "reconciling"
    SLEEPING = "sleeping"
    CANCELLED = "cancelled"


@dataclass
class CycleState:
    """Transient loop state; never persisted.

    Attributes:
        cycle_count: Cycles started so far.
        consecutive_rate_limit_errors: Rate-limited cycles in a row.
        adaptive_interval: Seconds to sleep after the current cycle.
    """

    cycle_count: int = 0
    consecutive_rate_limit_errors: int = 0
    adaptive_interval: int = 60


@dataclass
class DispatchResult:
    """Outcome of one routine dispatch within a cycle."""

    routine: Routine
    outcome: Outcome
    duration_ms: int
    executed_at: datetime


@dataclass
class CycleReport:
    """What happened in one cycle.

    Attributes:
        cycle: 1-based cycle number.
        cycle_id: Short hex id also carried by every log record of the cycle.
        fetched: Active routines returned by the catalog.
        added: Priority entries created by reconciliation.
        removed: Priority entries pruned by reconciliation.
        selected: Ids of the routines in the batch, in selection order.
        results: One :class:`DispatchResult` per completed dispatch.
        failure: Message of a cycle-level failure (fetch or selection).
        failure_kind: Classification of :attr:`failure`.
        cancelled: ``True`` if a stop request cut the cycle short.
        next_interval: Seconds to sleep before the next cycle.
        duration_s: Wall-clock duration of the cycle.
    """

    cycle: int
    cycle_id: str
    fetched: int = 0
    added: int = 0
    removed: int = 0
    selected: list[str] = field(default_factory=list)
    results: list[DispatchResult] = field(default_factory=list)
    failure: str | None = None
    failure_kind: FailureKind | None = None
    cancelled: bool = False
    next_interval: int = 0
    duration_s: float = 0.0

    @property
    def dispatched(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.outcome.success)

    @property
    def failed(self) -> int:
        return self.dispatched - self.succeeded

    @property
    def rate_limited(self) -> bool:
        """``True`` if the cycle itself failed on a rate limit."""
        return self.failure_kind is FailureKind.RATE_LIMITED

    def format_cycle_report(self) -> str:
        """One-line summary suitable for a single ``logger.info()`` call."""
        if self.cancelled:
            status = "cancelled"
        elif self.failure is not None:
            status = f"failed ({self.failure_kind}): {self.failure}"
        else:
            status = "ok"
        return (
            f"Cycle {self.cycle} {status} | fetched={self.fetched} "
            f"selected={len(self.selected)} succeeded={self.succeeded} "
            f"failed={self.failed} | {self.duration_s:.1f}s | "
            f"next in {self.next_interval}s"
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CycleOrchestrator:
    """Drive scheduling cycles until stopped.

    Args:
        catalog: Source of active routines and sink for outcome reports.
        pipeline: Dispatch target for selected routines.
        store: Priority store; reconciled every cycle and committed to after
            every dispatch.
        selector: Builds each cycle's batch.
        history: Local execution history, or ``None`` to skip recording and
            dedup hints.
        settings: Runtime settings.  Loaded from the environment if ``None``.
        max_executions_per_cycle: Batch size override.  Defaults to
            ``settings.max_executions_per_cycle``, then to the store's
            global settings.
        base_interval: Base seconds between cycles.  Defaults to
            ``settings.cycle_interval``.
        clock: Returns the current time as an aware UTC datetime.
        on_cycle: Called with each :class:`CycleReport` once the cycle ends.
    """

    def __init__(
        self,
        catalog: RoutineCatalog,
        pipeline: ExecutionPipeline,
        store: PriorityStore,
        selector: Selector,
        history: ExecutionHistoryRepository | None = None,
        settings: Settings | None = None,
        *,
        max_executions_per_cycle: int | None = None,
        base_interval: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
        on_cycle: Callable[[CycleReport], None] | None = None,
    ) -> None:
        self._catalog = catalog
        self._pipeline = pipeline
        self._store = store
        self._selector = selector
        self._history = history
        self._settings = settings if settings is not None else Settings()
        self._max_executions = (
            max_executions_per_cycle
            if max_executions_per_cycle is not None
            else self._settings.max_executions_per_cycle
        )
        self._base_interval = base_interval or self._settings.cycle_interval
        self._clock = clock
        self._on_cycle = on_cycle

        self._state = CycleState(adaptive_interval=self._base_interval)
        self._phase = CyclePhase.IDLE
        self._stop = asyncio.Event()
        self._running = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def phase(self) -> CyclePhase:
        return self._phase

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def base_interval(self) -> int:
        return self._base_interval

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the loop to stop at once.  Idempotent; safe from signal handlers."""
        if not self._stop.is_set():
            logger.info(
                "Stop requested during %s.",
                self._phase,
                extra={"event": events.SHUTDOWN_REQUESTED},
            )
        self._stop.set()

    async def run_forever(self) -> None:
        """Run cycles until :meth:`request_stop` is called or the task is cancelled.

        Raises:
            OrchestratorError: If the loop is already running.
            asyncio.CancelledError: If the calling task is cancelled.
        """
        if self._running:
            raise OrchestratorError("run_forever is already running on this orchestrator")
        self._running = True
        logger.info(
            "Scheduler started: base interval %ds, batch size %s.",
            self._base_interval,
            self._max_executions if self._max_executions is not None else "from store",
        )
        try:
            while not self._stop.is_set():
                try:
                    report = await self.run_cycle()
                except Exception:
                    logger.exception("Unhandled exception in cycle; retrying after interval.")
                    interval = self._state.adaptive_interval
                else:
                    if report.cancelled:
                        break
                    interval = report.next_interval
                await self._sleep(interval)
        finally:
            self._phase = CyclePhase.CANCELLED
            self._running = False
            logger.info(
                "Scheduler stopped after %d cycles.",
                self._state.cycle_count,
                extra={"event": events.SHUTDOWN_REQUESTED},
            )

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one full cycle and return its report.

        Fetch and selection failures are caught, classified and reflected in
        the report and the cadence; they never propagate.
        """
        self._state.cycle_count += 1
        report = CycleReport(cycle=self._state.cycle_count, cycle_id=uuid.uuid4().hex[:8])
        token = CYCLE_ID_CTX.set(report.cycle_id)
        started = time.monotonic()
        logger.info(
            "Cycle %d started.",
            report.cycle,
            extra={"event": events.CYCLE_START, "cycle": report.cycle},
        )
        try:
            await self._run_phases(report)
        except _StopRequested:
            report.cancelled = True
            report.next_interval = self._state.adaptive_interval
        finally:
            report.duration_s = time.monotonic() - started
            if report.cancelled:
                logger.info("Cycle %d cancelled.", report.cycle)
            elif report.failure is None:
                logger.info(
                    "%s",
                    report.format_cycle_report(),
                    extra={"event": events.CYCLE_COMPLETE, "cycle": report.cycle},
                )
            CYCLE_ID_CTX.reset(token)

        if self._on_cycle is not None:
            self._on_cycle(report)
        return report

    async def _run_phases(self, report: CycleReport) -> None:
        # 1. Fetch
        self._phase = CyclePhase.FETCHING_ROUTINES
        try:
            routines = await self._until_stopped(self._catalog.fetch_active())
        except _StopRequested:
            raise
        except Exception as exc:  # noqa: BLE001
            self._record_cycle_failure(report, exc, "fetch")
            return
        report.fetched = len(routines)

        if not routines:
            logger.info("No active routines; sleeping %ds.", self._base_interval)
            self._reset_cadence()
            report.next_interval = self._base_interval
            return

        # 2. Reconcile the store with the catalog
        added, removed = self._store.reconcile(routines)
        report.added, report.removed = len(added), len(removed)

        # 3. Select
        self._phase = CyclePhase.SELECTING_BATCH
        try:
            batch = self._selector.select_batch(routines, self._batch_limit())
        except Exception as exc:  # noqa: BLE001
            self._record_cycle_failure(report, exc, "selection")
            return
        report.selected = [r.id for r in batch]
        if not batch:
            logger.info("No routine is eligible this cycle.")

        # 4. Dispatch
        self._phase = CyclePhase.DISPATCHING
        results = await self._dispatch_batch(batch, report.cycle)

        # 5. Commit outcomes
        self._phase = CyclePhase.RECONCILING
        report.results = results
        await self._commit_results(results, report.cycle)

        every = self._settings.snapshot_every_cycles
        if every and report.cycle % every == 0:
            self._log_snapshot()

        # 6. Cadence
        self._reset_cadence()
        report.next_interval = self._state.adaptive_interval

    def _batch_limit(self) -> int:
        if self._max_executions is not None:
            return self._max_executions
        return self._store.global_settings.max_executions_per_cycle

    # ------------------------------------------------------------------
    # Cadence
    # ------------------------------------------------------------------

    def _reset_cadence(self) -> None:
        if self._state.adaptive_interval != self._base_interval:
            logger.info(
                "Cycle interval reset to %ds.",
                self._base_interval,
                extra={"event": events.INTERVAL_ADJUSTED},
            )
        self._state.consecutive_rate_limit_errors = 0
        self._state.adaptive_interval = self._base_interval

    def _record_cycle_failure(self, report: CycleReport, exc: Exception, step: str) -> None:
        kind = classify_failure(exc)
        report.failure = str(exc) or type(exc).__name__
        report.failure_kind = kind

        if kind is FailureKind.RATE_LIMITED:
            self._state.consecutive_rate_limit_errors += 1
            previous = self._state.adaptive_interval
            self._state.adaptive_interval = min(
                suggest_optimal_interval(self._state.consecutive_rate_limit_errors, previous),
                MAX_ADAPTIVE_INTERVAL,
            )
            logger.warning(
                "Cycle %d rate limited during %s (%d in a row): %s",
                report.cycle,
                step,
                self._state.consecutive_rate_limit_errors,
                report.failure,
                extra={"event": events.CYCLE_RATE_LIMITED, "cycle": report.cycle},
            )
            logger.info(
                "Cycle interval adjusted from %ds to %ds.",
                previous,
                self._state.adaptive_interval,
                extra={"event": events.INTERVAL_ADJUSTED},
            )
        else:
            logger.error(
                "Cycle %d aborted during %s (%s): %s",
                report.cycle,
                step,
                kind,
                report.failure,
                extra={"event": events.CYCLE_ABORT, "cycle": report.cycle},
            )
            self._reset_cadence()
        report.next_interval = self._state.adaptive_interval

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch_batch(self, batch: list[Routine], cycle: int) -> list[DispatchResult]:
        if not batch:
            return []

        semaphore = asyncio.Semaphore(self._settings.dispatch_concurrency)

        async def _guarded(routine: Routine) -> DispatchResult:
            async with semaphore:
                return await self._dispatch_one(routine, cycle)

        tasks = [
            asyncio.create_task(_guarded(routine), name=f"dispatch-{routine.id}")
            for routine in batch
        ]
        try:
            # _abandon owns the grace wait for the dispatch tasks.
            await self._until_stopped(asyncio.wait(tasks), grace=0)
        finally:
            await self._abandon(tasks)
        return [task.result() for task in tasks]

    async def _dispatch_one(self, routine: Routine, cycle: int) -> DispatchResult:
        executed_at = self._clock()
        started = time.monotonic()
        timeout = self._settings.dispatch_timeout
        logger.info(
            "Dispatching routine %s.",
            routine.label,
            extra={"event": events.ROUTINE_DISPATCHED, "routine_id": routine.id, "cycle": cycle},
        )

        hints = await self._dedup_hints(routine.id)
        try:
            outcome = await asyncio.wait_for(self._pipeline.dispatch(routine, hints), timeout)
        except TimeoutError:
            exc = DispatchTimeoutError(routine.id, timeout)
            logger.warning(
                "%s",
                exc,
                extra={"event": events.ROUTINE_TIMEOUT, "routine_id": routine.id},
            )
            outcome = Outcome(
                success=False,
                message="Dispatch timed out",
                error=str(exc),
                failure_kind=exc.failure_kind,
            )
        except Exception as exc:  # noqa: BLE001
            outcome = Outcome(
                success=False,
                message="Error occurred during execution",
                error=str(exc) or type(exc).__name__,
                failure_kind=classify_failure(exc),
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        if outcome.success:
            logger.info(
                "Routine %s succeeded in %d ms: %s",
                routine.label,
                duration_ms,
                outcome.message,
                extra={"event": events.ROUTINE_SUCCEEDED, "routine_id": routine.id},
            )
        else:
            logger.warning(
                "Routine %s failed (%s) in %d ms: %s",
                routine.label,
                outcome.failure_kind,
                duration_ms,
                outcome.error,
                extra={"event": events.ROUTINE_FAILED, "routine_id": routine.id},
            )
        return DispatchResult(
            routine=routine, outcome=outcome, duration_ms=duration_ms, executed_at=executed_at
        )

    async def _dedup_hints(self, routine_id: str) -> list[str]:
        if self._history is None or self._settings.history_dedup_limit <= 0:
            return []
        try:
            return await self._history.dedup_hints(
                routine_id, limit=self._settings.history_dedup_limit
            )
        except Exception:  # noqa: BLE001
            logger.warning("Could not load dedup hints for %s.", routine_id, exc_info=True)
            return []

    async def _abandon(self, tasks: list[asyncio.Task[Any]]) -> None:
        """Cancel unfinished *tasks* and wait at most the grace period for them."""
        pending = [task for task in tasks if not task.done()]
        if not pending:
            return
        for task in pending:
            task.cancel()
        grace = self._settings.shutdown_grace_period
        logger.info("Abandoning %d in-flight dispatches (grace %.1fs).", len(pending), grace)
        if grace > 0:
            await asyncio.wait(pending, timeout=grace)

    # ------------------------------------------------------------------
    # Outcome commit
    # ------------------------------------------------------------------

    async def _commit_results(self, results: list[DispatchResult], cycle: int) -> None:
        records = [self._to_record(result, cycle) for result in results]
        for result in results:
            self._store.record_outcome(result.routine.id, result.outcome.success)

        if self._history is not None:
            for record in records:
                try:
                    await self._history.record(record)
                except Exception:  # noqa: BLE001
                    logger.warning("Could not record execution %s locally.", record.id, exc_info=True)

        reports = await asyncio.gather(
            *(self._catalog.report_outcome(record) for record in records),
            return_exceptions=True,
        )
        for record, reported in zip(records, reports, strict=True):
            if isinstance(reported, BaseException):
                logger.warning(
                    "Could not report execution of %s upstream: %s", record.routine_id, reported
                )

    @staticmethod
    def _to_record(result: DispatchResult, cycle: int) -> ExecutionRecord:
        outcome = result.outcome
        raw = outcome.raw if isinstance(outcome.raw, dict) else {}
        directive_type = raw.get("type")
        directive_target = raw.get("command") if directive_type == "execute" else raw.get("filepath")
        return ExecutionRecord(
            id=uuid.uuid4().hex,
            routine_id=result.routine.id,
            routine_name=result.routine.name,
            success=outcome.success,
            message=outcome.message,
            error=None if outcome.success else outcome.error,
            failure_kind=None if outcome.success else outcome.failure_kind,
            duration_ms=result.duration_ms,
            executed_at=result.executed_at,
            cycle=cycle,
            directive_type=directive_type,
            directive_target=directive_target,
        )

    def _log_snapshot(self) -> None:
        snapshot = self._store.snapshot()
        lines = [
            f"  {e.routine_id}: priority={e.priority} weight={e.weight:.1f} "
            f"success_rate={e.success_rate:.2f} runs={e.execution_count}"
            for e in snapshot.entries
        ]
        logger.info(
            "Priority snapshot (%d routines):\n%s",
            len(snapshot.entries),
            "\n".join(lines) or "  (none)",
            extra={"event": events.PRIORITY_SNAPSHOT},
        )

    # ------------------------------------------------------------------
    # Suspension helpers
    # ------------------------------------------------------------------

    async def _until_stopped(
        self, aw: Coroutine[Any, Any, T] | Awaitable[T], *, grace: float | None = None
    ) -> T:
        """Await *aw*, raising :class:`_StopRequested` as soon as a stop is requested.

        On stop, *aw* is cancelled and given *grace* seconds (the shutdown grace
        period by default) to unwind. Pass ``grace=0`` when the caller waits for
        the underlying work itself.
        """
        if self._stop.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise _StopRequested
        work = asyncio.ensure_future(aw)
        stopper = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not work.done():
                work.cancel()
                if grace is None:
                    grace = self._settings.shutdown_grace_period
                if grace > 0:
                    await asyncio.wait({work}, timeout=grace)
        if not work.done() or work.cancelled():
            raise _StopRequested
        return work.result()

    async def _sleep(self, seconds: float) -> None:
        self._phase = CyclePhase.SLEEPING
        logger.info("Next cycle in %ds.", seconds)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
