"""Routinebot core domain models.

Two families of models live here:

* **Catalog payloads** (:class:`Routine`, :class:`RoutineStep`) mirror what
  the remote routine service returns.  They are read-only to the scheduler;
  step contents are opaque and only ever passed through to prompt building.
* **Scheduling state** (:class:`PriorityEntry`, :class:`GlobalSettings`,
  :class:`PriorityDocument`) is owned by the priority store and persisted as a
  single JSON document per working directory.

Numeric scheduling fields are *clamped* rather than rejected: an operator who
asks for priority 15 gets priority 10.  Clamping runs on construction and on
attribute assignment, so no code path can leave an entry out of range.

Typical usage::

    from routinebot.core.models import PriorityEntry

    entry = PriorityEntry(routine_id="abc123")
    entry.priority = 15
    assert entry.priority == 10
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "FailureKind",
    "RoutineStep",
    "Routine",
    "PriorityEntry",
    "GlobalSettings",
    "PriorityDocument",
    "PrioritySnapshot",
    "Outcome",
    "ExecutionRecord",
    "PRIORITY_MIN",
    "PRIORITY_MAX",
    "WEIGHT_MIN",
    "WEIGHT_MAX",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Clamp bounds
# ---------------------------------------------------------------------------

PRIORITY_MIN: int = 1
PRIORITY_MAX: int = 10
PRIORITY_DEFAULT: int = 5

WEIGHT_MIN: float = 0.1
WEIGHT_MAX: float = 5.0
WEIGHT_DEFAULT: float = 1.0


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class FailureKind(StrEnum):
    """Closed classification of a failed remote operation.

    Produced at the boundary where the external call is made and consumed by
    the backoff engine, which only ever retries :attr:`RATE_LIMITED`.
    """

    RATE_LIMITED = "rate_limited"
    """The service throttled the request (HTTP 429, quota exceeded)."""

    TRANSIENT = "transient"
    """Network-shaped failure: connection refused, timeout, 5xx."""

    PERMANENT = "permanent"
    """Validation, authentication or not-found; never retried."""


# ---------------------------------------------------------------------------
# Catalog payloads
# ---------------------------------------------------------------------------


class RoutineStep(BaseModel):
    """One free-text instruction of a routine.

    ``parameters`` is an opaque JSON value (object, list, string, number …)
    and is never inspected by the scheduler.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = ""
    order: int = 0
    type: str = ""
    content: str = ""
    parameters: Any = None


class Routine(BaseModel):
    """A named unit of work fetched from the routine catalog.

    Accepts the service's camelCase payload (``isActive``) as well as
    snake_case keyword arguments.

    Attributes:
        id: Catalog identifier (non-empty).
        name: Display name.
        description: Free-text description.
        is_active: Whether the catalog considers the routine active.
        steps: Ordered instructions; see :meth:`ordered_steps`.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    is_active: bool = Field(default=True, alias="isActive")
    steps: tuple[RoutineStep, ...] = ()

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: object) -> object:
        """Numeric ids from the service are accepted and stringified."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("steps", mode="before")
    @classmethod
    def _none_steps_to_empty(cls, v: object) -> object:
        return () if v is None else v

    @property
    def label(self) -> str:
        """Name when available, otherwise the id."""
        return self.name or self.id

    def ordered_steps(self) -> list[RoutineStep]:
        """Return steps sorted by their ``order`` field (stable)."""
        return sorted(self.steps, key=lambda step: step.order)


# ---------------------------------------------------------------------------
# Scheduling state
# ---------------------------------------------------------------------------


class PriorityEntry(BaseModel):
    """Persisted scheduling metadata for a single routine.

    Attributes:
        routine_id: Foreign key to :attr:`Routine.id`; unique per document.
        priority: Operator priority, clamped to ``[1, 10]``.
        weight: Operator weight, clamped to ``[0.1, 5.0]``.
        last_executed: Timestamp of the last run (reservation or outcome);
            ``None`` means never run.
        execution_count: Number of committed outcomes.
        success_rate: EMA of outcomes in ``[0, 1]``; starts optimistic at 1.0.
    """

    model_config = ConfigDict(validate_assignment=True)

    routine_id: str = Field(..., min_length=1)
    priority: int = PRIORITY_DEFAULT
    weight: float = WEIGHT_DEFAULT
    last_executed: datetime | None = None
    execution_count: int = Field(default=0, ge=0)
    success_rate: float = 1.0

    @field_validator("priority", mode="before")
    @classmethod
    def _clamp_priority(cls, v: object) -> object:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return int(_clamp(int(v), PRIORITY_MIN, PRIORITY_MAX))
        return v

    @field_validator("weight", mode="before")
    @classmethod
    def _clamp_weight(cls, v: object) -> object:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(_clamp(float(v), WEIGHT_MIN, WEIGHT_MAX))
        return v

    @field_validator("success_rate", mode="before")
    @classmethod
    def _clamp_success_rate(cls, v: object) -> object:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(_clamp(float(v), 0.0, 1.0))
        return v

    @field_validator("last_executed")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        # Hand-edited documents may carry naive timestamps.
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class GlobalSettings(BaseModel):
    """Document-wide scheduling knobs, persisted next to the entries."""

    model_config = ConfigDict(validate_assignment=True)

    max_executions_per_cycle: int = Field(default=3, ge=0)
    cooldown_period_seconds: int = Field(default=300, ge=0)
    # Advisory only; the cycle cadence comes from the runner settings.
    minimum_interval_seconds: int = Field(default=60, ge=0)


class PriorityDocument(BaseModel):
    """The complete on-disk priority document."""

    priorities: list[PriorityEntry] = Field(default_factory=list)
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)


class PrioritySnapshot(BaseModel):
    """Read-only copy of the store for display and audit."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[PriorityEntry, ...] = ()
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)

    def get(self, routine_id: str) -> PriorityEntry | None:
        """Return the entry for *routine_id*, or ``None``."""
        for entry in self.entries:
            if entry.routine_id == routine_id:
                return entry
        return None


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------


class Outcome(BaseModel):
    """Result of dispatching one routine through the execution pipeline.

    Attributes:
        success: Whether the routine's side effects were applied.
        message: Short human-readable summary.
        error: Error text for failed outcomes.
        failure_kind: Classification of the failure, ``None`` on success.
        raw: Opaque pipeline payload (e.g. the parsed directive).
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str = ""
    error: str | None = None
    failure_kind: FailureKind | None = None
    raw: Any = None


class ExecutionRecord(BaseModel):
    """One recorded execution, kept in local history and reported upstream.

    Carries enough context (routine id, classification, timestamp, duration)
    to reconstruct why a routine failed.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    routine_id: str
    routine_name: str = ""
    success: bool
    message: str = ""
    error: str | None = None
    failure_kind: FailureKind | None = None
    duration_ms: int = Field(default=0, ge=0)
    executed_at: datetime
    cycle: int | None = None
    # What the pipeline did, for dedup hints: e.g. ("create", "notes/todo.md").
    directive_type: str | None = None
    directive_target: str | None = None
