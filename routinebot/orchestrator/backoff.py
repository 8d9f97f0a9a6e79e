"""Failure classification, retry delays and adaptive cycle intervals.

Three concerns live here because they share one vocabulary
(:class:`~routinebot.core.models.FailureKind`):

* **Classification**: :func:`classify_failure` maps any exception to
  ``RATE_LIMITED``, ``TRANSIENT`` or ``PERMANENT``.  Exceptions raised by
  routinebot's own adapters carry the answer explicitly; foreign exceptions
  fall back to status codes, exception type, and finally message text.
* **Retry**: :func:`execute_with_retry` runs an async operation under
  :class:`tenacity.AsyncRetrying`, retrying *only* rate-limited failures with
  :func:`calculate_delay` between attempts.
* **Cadence**: :func:`suggest_optimal_interval` stretches the sleep between
  cycles after consecutive rate-limited cycles.

Delay formula (``attempt`` is 0-based)::

    base        = max(retry_after, policy.base_delay)   # or base_delay if no hint
    exponential = base * policy.backoff_multiplier ** attempt
    delay       = min(exponential + jitter, policy.max_delay)
    jitter     ∈ [0, 0.1 * exponential)

Typical usage::

    from routinebot.orchestrator.backoff import RetryPolicy, execute_with_retry

    policy = RetryPolicy(max_retries=2, base_delay=2.0)
    text = await execute_with_retry(lambda: client.generate(prompt), policy)
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Final, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from routinebot.core import events
from routinebot.core.models import FailureKind

__all__ = [
    "RATE_LIMIT_MARKER",
    "RetryPolicy",
    "classify_failure",
    "is_rate_limit_error",
    "retry_after_hint",
    "calculate_delay",
    "execute_with_retry",
    "suggest_optimal_interval",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Machine-readable marker some services put in the error body instead of 429.
RATE_LIMIT_MARKER: Final[str] = "RATE_LIMIT_EXCEEDED"

#: Lower-cased message fragments that identify a throttling error when nothing
#: structured is available.
_RATE_LIMIT_PHRASES: Final[tuple[str, ...]] = (
    "rate limit",
    "quota exceeded",
    "too many requests",
    "429",
)

#: Jitter is drawn from ``[0, _JITTER_FRACTION * exponential)``.
_JITTER_FRACTION: Final[float] = 0.1

#: Interval multiplier is ``min(2 + 0.5 * errors, 5)``.
_INTERVAL_BASE_FACTOR: Final[float] = 2.0
_INTERVAL_STEP_FACTOR: Final[float] = 0.5
_INTERVAL_MAX_FACTOR: Final[float] = 5.0

_TRANSIENT_TYPES: Final[tuple[type[BaseException], ...]] = (
    httpx.TransportError,
    TimeoutError,
    ConnectionError,
)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds for retrying a rate-limited operation.

    Attributes:
        max_retries: Retries after the first call; total calls are
            ``max_retries + 1``.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Hard cap on any single delay, in seconds.
        backoff_multiplier: Growth factor per attempt (≥ 1).
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be ≥ 0, got {self.max_retries!r}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError(
                f"backoff_multiplier must be ≥ 1, got {self.backoff_multiplier!r}"
            )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_failure(exc: BaseException) -> FailureKind:
    """Classify *exc* for retry and cadence decisions.

    Resolution order:

    1. An explicit ``failure_kind`` attribute (all routinebot service errors).
    2. HTTP status 429, or the :data:`RATE_LIMIT_MARKER` in a ``code``
       attribute or the message → ``RATE_LIMITED``.
    3. Network-shaped exceptions and HTTP 5xx → ``TRANSIENT``.
    4. Rate-limit phrases in the message → ``RATE_LIMITED``.
    5. Anything else → ``PERMANENT``.

    Args:
        exc: The exception raised by a remote operation.

    Returns:
        The :class:`FailureKind` for *exc*.
    """
    kind = getattr(exc, "failure_kind", None)
    if isinstance(kind, FailureKind):
        return kind

    status = _status_code(exc)
    message = str(exc)
    if status == 429 or getattr(exc, "code", None) == RATE_LIMIT_MARKER:
        return FailureKind.RATE_LIMITED
    if RATE_LIMIT_MARKER in message:
        return FailureKind.RATE_LIMITED

    if isinstance(exc, _TRANSIENT_TYPES):
        return FailureKind.TRANSIENT
    if status is not None and status >= 500:
        return FailureKind.TRANSIENT

    lowered = message.lower()
    if any(phrase in lowered for phrase in _RATE_LIMIT_PHRASES):
        return FailureKind.RATE_LIMITED

    return FailureKind.PERMANENT


def is_rate_limit_error(exc: BaseException) -> bool:
    """``True`` if :func:`classify_failure` says *exc* is a rate limit."""
    return classify_failure(exc) is FailureKind.RATE_LIMITED


def retry_after_hint(exc: BaseException) -> float | None:
    """Return the service-recommended wait carried by *exc*, in seconds.

    Reads a ``retry_after`` attribute (set by
    :class:`~routinebot.core.exceptions.ServiceRateLimitError`) and falls back
    to a ``Retry-After`` header on an attached HTTP response.  Non-positive or
    unparsable values count as no hint.
    """
    hint: Any = getattr(exc, "retry_after", None)
    if hint is None:
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            hint = headers.get("retry-after")
    if hint is None:
        return None
    try:
        seconds = float(hint)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


# ---------------------------------------------------------------------------
# Delay
# ---------------------------------------------------------------------------


def calculate_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Return the delay in seconds before retry number ``attempt + 1``.

    Args:
        attempt: Zero-based index of the attempt that just failed.
        policy: Retry bounds.
        retry_after: Optional service hint; raises the base, never lowers it.
        rng: Source of jitter.  Defaults to the module-level :mod:`random`.

    Returns:
        A delay in ``[0, policy.max_delay]``, non-decreasing in *attempt*
        apart from jitter.
    """
    base = policy.base_delay
    if retry_after is not None:
        base = max(retry_after, policy.base_delay)
    exponential = base * policy.backoff_multiplier ** max(attempt, 0)
    jitter = (rng or random).random() * _JITTER_FRACTION * exponential
    return min(exponential + jitter, policy.max_delay)


# ---------------------------------------------------------------------------
# Retry driver
# ---------------------------------------------------------------------------


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
    label: str = "operation",
) -> T:
    """Await ``operation()``, retrying only rate-limited failures.

    Non-rate-limit failures propagate after exactly one call.  When retries
    are exhausted the last rate-limit failure propagates unchanged.  Sleeps go
    through *sleep*, so cancelling the calling task interrupts a pending wait.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Retry bounds.
        sleep: Awaitable sleep used between attempts.
        rng: Jitter source passed to :func:`calculate_delay`.
        label: Short name used in log messages.

    Returns:
        The value returned by the first successful call.

    Raises:
        Exception: Whatever the final failing call raised.
    """

    def _wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = retry_after_hint(exc) if exc is not None else None
        return calculate_delay(retry_state.attempt_number - 1, policy, hint, rng)

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s rate limited (attempt %d/%d): %s. Retrying in %.1f s",
            label,
            retry_state.attempt_number,
            policy.max_retries + 1,
            exc,
            retry_state.upcoming_sleep,
            extra={"event": events.RATE_LIMIT_RETRY, "label": label},
        )

    result: T | None = None
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(is_rate_limit_error),
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=_wait,
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            result = await operation()
    return result  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Cadence
# ---------------------------------------------------------------------------


def suggest_optimal_interval(errors: int, current: int) -> int:
    """Stretch the cycle interval after *errors* consecutive rate-limited cycles.

    Args:
        errors: Consecutive rate-limited cycles so far.
        current: The interval currently in effect, in seconds.  Passing the
            previous result compounds the growth across cycles.

    Returns:
        *current* when *errors* is 0, otherwise
        ``floor(current * min(2 + 0.5 * errors, 5))``.
    """
    if errors <= 0:
        return current
    factor = min(_INTERVAL_BASE_FACTOR + _INTERVAL_STEP_FACTOR * errors, _INTERVAL_MAX_FACTOR)
    return math.floor(current * factor)
