"""Cooldown-filtered weighted random choice of the next routine.

Weight of an eligible routine::

    w = priority * weight * success_rate
    if last_executed is set:
        w *= min(1 + hours_since_last_run * 0.1, 3)
    w = max(w, 0.1)

A routine with no priority entry weighs exactly 1.0.  The floor is applied
after the recency boost, so every eligible routine keeps a non-zero chance
however badly it has been doing.

A routine is eligible when it has no entry, has never run, or its last run
is strictly older than the store's cooldown period.

Typical usage::

    selector = Selector(store, rng=random.Random(42))
    batch = selector.select_batch(routines, limit=3)
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Final

from routinebot.core import events
from routinebot.core.models import PriorityEntry, Routine
from routinebot.priorities.store import PriorityStore

__all__ = ["Selector", "compute_weight", "is_eligible"]

logger = logging.getLogger(__name__)

#: Every eligible routine weighs at least this much.
MIN_WEIGHT: Final[float] = 0.1

#: Weight of a routine the store has no entry for.
UNKNOWN_ROUTINE_WEIGHT: Final[float] = 1.0

#: Recency boost grows by this much per hour since the last run ...
RECENCY_BOOST_PER_HOUR: Final[float] = 0.1

#: ... up to this multiplier.
RECENCY_BOOST_CAP: Final[float] = 3.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def is_eligible(entry: PriorityEntry | None, now: datetime, cooldown: timedelta) -> bool:
    """``True`` if the routine behind *entry* may be selected at *now*."""
    if entry is None or entry.last_executed is None:
        return True
    return now - entry.last_executed > cooldown


def compute_weight(entry: PriorityEntry | None, now: datetime) -> float:
    """Selection weight of one eligible routine at *now*."""
    if entry is None:
        return UNKNOWN_ROUTINE_WEIGHT
    weight = entry.priority * entry.weight * entry.success_rate
    if entry.last_executed is not None:
        hours_since = (now - entry.last_executed).total_seconds() / 3600
        weight *= min(1 + hours_since * RECENCY_BOOST_PER_HOUR, RECENCY_BOOST_CAP)
    return max(weight, MIN_WEIGHT)


class Selector:
    """Pick routines to run from the current catalog and store state.

    Args:
        store: Source of priority entries and the cooldown period; also the
            target of batch reservations.
        rng: Random source for the weighted draw.  Inject a seeded
            :class:`random.Random` for reproducible selection.
        clock: Returns the current time as an aware UTC datetime.
    """

    def __init__(
        self,
        store: PriorityStore,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._rng = rng or random.Random()
        self._clock = clock

    def select_one(self, routines: Sequence[Routine]) -> Routine | None:
        """Draw one eligible routine, or ``None`` if every routine is cooling down.

        The draw is ``rng.random() * total``; the first routine whose running
        weight total reaches the draw wins.  Floating point slack falls back
        to the last eligible routine.
        """
        if not routines:
            return None

        snapshot = self._store.snapshot()
        cooldown = timedelta(seconds=snapshot.global_settings.cooldown_period_seconds)
        now = self._clock()

        candidates = [r for r in routines if is_eligible(snapshot.get(r.id), now, cooldown)]
        if not candidates:
            logger.info("All %d routines are in cooldown.", len(routines))
            return None

        weights = [compute_weight(snapshot.get(r.id), now) for r in candidates]
        draw = self._rng.random() * sum(weights)

        cumulative = 0.0
        for routine, weight in zip(candidates, weights, strict=True):
            cumulative += weight
            if draw <= cumulative:
                logger.info(
                    "Selected routine %s (weight %.2f).",
                    routine.label,
                    weight,
                    extra={"event": events.ROUTINE_SELECTED, "routine_id": routine.id},
                )
                return routine
        return candidates[-1]

    def select_batch(self, routines: Sequence[Routine], limit: int) -> list[Routine]:
        """Select up to *limit* distinct routines for one cycle.

        Each pick is reserved in the store before the next draw, which puts
        it on cooldown.  Picked routines are also excluded from later draws,
        so a zero cooldown still yields distinct routines.  Selection stops
        early once no eligible routine is left.
        """
        batch: list[Routine] = []
        remaining = list(routines)
        for _ in range(max(limit, 0)):
            routine = self.select_one(remaining)
            if routine is None:
                break
            self._store.reserve(routine.id)
            batch.append(routine)
            remaining = [r for r in remaining if r.id != routine.id]
        return batch
