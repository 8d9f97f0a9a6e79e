"""Unit tests for the rate-limit backoff engine.

Tests cover:
- ``classify_failure`` resolution order (explicit kind, status, marker,
  transport errors, phrases, fallback).
- ``calculate_delay`` growth, cap, jitter bounds and ``retry_after`` hints.
- ``execute_with_retry`` retry/propagation behaviour with an injected sleep.
- ``suggest_optimal_interval`` factors and compounding.
"""

from __future__ import annotations

import random

import httpx
import pytest

from routinebot.core.exceptions import (
    DispatchTimeoutError,
    GenerationError,
    ServiceRateLimitError,
    ServiceUnavailableError,
)
from routinebot.core.models import FailureKind
from routinebot.orchestrator.backoff import (
    RATE_LIMIT_MARKER,
    RetryPolicy,
    calculate_delay,
    classify_failure,
    execute_with_retry,
    is_rate_limit_error,
    retry_after_hint,
    suggest_optimal_interval,
)


class _FixedRng(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self._value = value

    def random(self) -> float:
        return self._value


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_defaults(self) -> None:
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 60.0
        assert policy.backoff_multiplier == 2.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"base_delay": -0.5},
            {"max_delay": -1},
            {"backoff_multiplier": 0.5},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


# ---------------------------------------------------------------------------
# classify_failure
# ---------------------------------------------------------------------------


class TestClassifyFailure:
    def test_explicit_failure_kind_wins(self) -> None:
        assert classify_failure(ServiceRateLimitError("catalog")) is FailureKind.RATE_LIMITED
        assert classify_failure(ServiceUnavailableError("catalog", "down")) is FailureKind.TRANSIENT
        assert classify_failure(GenerationError("no content")) is FailureKind.PERMANENT
        assert classify_failure(DispatchTimeoutError("r1", 5)) is FailureKind.TRANSIENT

    def test_status_429_is_rate_limited(self) -> None:
        assert classify_failure(_StatusError("slow down", 429)) is FailureKind.RATE_LIMITED

    def test_marker_in_message_is_rate_limited(self) -> None:
        exc = RuntimeError(f"service said {RATE_LIMIT_MARKER}")
        assert classify_failure(exc) is FailureKind.RATE_LIMITED

    def test_marker_in_code_attribute(self) -> None:
        exc = RuntimeError("failed")
        exc.code = RATE_LIMIT_MARKER  # type: ignore[attr-defined]
        assert classify_failure(exc) is FailureKind.RATE_LIMITED

    def test_transport_errors_are_transient(self) -> None:
        assert classify_failure(httpx.ConnectError("refused")) is FailureKind.TRANSIENT
        assert classify_failure(TimeoutError()) is FailureKind.TRANSIENT
        assert classify_failure(ConnectionResetError()) is FailureKind.TRANSIENT

    def test_server_errors_are_transient(self) -> None:
        assert classify_failure(_StatusError("boom", 503)) is FailureKind.TRANSIENT

    @pytest.mark.parametrize(
        "message",
        ["Rate limit hit", "Quota exceeded for today", "Too Many Requests", "HTTP 429"],
    )
    def test_rate_limit_phrases(self, message: str) -> None:
        assert classify_failure(RuntimeError(message)) is FailureKind.RATE_LIMITED

    def test_unknown_errors_are_permanent(self) -> None:
        assert classify_failure(ValueError("bad input")) is FailureKind.PERMANENT
        assert classify_failure(_StatusError("not found", 404)) is FailureKind.PERMANENT

    def test_is_rate_limit_error(self) -> None:
        assert is_rate_limit_error(ServiceRateLimitError("llm"))
        assert not is_rate_limit_error(ValueError("nope"))


class TestRetryAfterHint:
    def test_attribute(self) -> None:
        assert retry_after_hint(ServiceRateLimitError("llm", retry_after=7)) == 7.0

    def test_absent(self) -> None:
        assert retry_after_hint(ServiceRateLimitError("llm")) is None
        assert retry_after_hint(ValueError("x")) is None

    def test_non_positive_ignored(self) -> None:
        exc = RuntimeError("x")
        exc.retry_after = 0  # type: ignore[attr-defined]
        assert retry_after_hint(exc) is None

    def test_response_header(self) -> None:
        request = httpx.Request("GET", "http://svc/api")
        response = httpx.Response(429, headers={"Retry-After": "12"}, request=request)
        exc = httpx.HTTPStatusError("429", request=request, response=response)
        assert retry_after_hint(exc) == 12.0


# ---------------------------------------------------------------------------
# calculate_delay
# ---------------------------------------------------------------------------


class TestCalculateDelay:
    def test_exponential_growth_without_jitter(self) -> None:
        policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=60.0)
        rng = _FixedRng(0.0)
        delays = [calculate_delay(n, policy, rng=rng) for n in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert calculate_delay(20, policy, rng=_FixedRng(0.99)) == 10.0

    def test_jitter_is_bounded_by_ten_percent(self) -> None:
        policy = RetryPolicy(base_delay=2.0, max_delay=1000.0)
        rng = random.Random(1234)
        for attempt in range(6):
            exponential = 2.0 * 2.0**attempt
            delay = calculate_delay(attempt, policy, rng=rng)
            assert exponential <= delay < exponential * 1.1

    def test_non_decreasing_apart_from_jitter(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=30.0)
        rng = _FixedRng(0.5)
        delays = [calculate_delay(n, policy, rng=rng) for n in range(10)]
        assert delays == sorted(delays)
        assert all(0 <= d <= 30.0 for d in delays)

    def test_retry_after_raises_base(self) -> None:
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
        assert calculate_delay(0, policy, retry_after=5.0, rng=_FixedRng(0.0)) == 5.0
        assert calculate_delay(1, policy, retry_after=5.0, rng=_FixedRng(0.0)) == 10.0

    def test_retry_after_below_base_is_ignored(self) -> None:
        policy = RetryPolicy(base_delay=3.0)
        assert calculate_delay(0, policy, retry_after=1.0, rng=_FixedRng(0.0)) == 3.0


# ---------------------------------------------------------------------------
# execute_with_retry
# ---------------------------------------------------------------------------


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        sleep = _SleepRecorder()
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            return "done"

        assert await execute_with_retry(op, RetryPolicy(), sleep=sleep) == "done"
        assert calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_rate_limits_then_succeeds(self) -> None:
        sleep = _SleepRecorder()
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ServiceRateLimitError("llm")
            return "ok"

        policy = RetryPolicy(max_retries=2, base_delay=2.0, max_delay=60.0)
        result = await execute_with_retry(op, policy, sleep=sleep, rng=_FixedRng(0.0))

        assert result == "ok"
        assert calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_rate_limit_error_propagates_after_one_call(self) -> None:
        sleep = _SleepRecorder()
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            raise GenerationError("garbage")

        with pytest.raises(GenerationError):
            await execute_with_retry(op, RetryPolicy(max_retries=5), sleep=sleep)
        assert calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_reraise_last_error(self) -> None:
        sleep = _SleepRecorder()
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            raise ServiceRateLimitError("llm", retry_after=calls)

        with pytest.raises(ServiceRateLimitError) as excinfo:
            await execute_with_retry(op, RetryPolicy(max_retries=1), sleep=sleep)
        assert calls == 2
        assert len(sleep.delays) == 1
        assert excinfo.value.retry_after == 2

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_call(self) -> None:
        sleep = _SleepRecorder()

        async def op() -> str:
            raise ServiceRateLimitError("llm")

        with pytest.raises(ServiceRateLimitError):
            await execute_with_retry(op, RetryPolicy(max_retries=0), sleep=sleep)
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retry_after_hint_drives_delay(self) -> None:
        sleep = _SleepRecorder()
        calls = 0

        async def op() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ServiceRateLimitError("llm", retry_after=9)
            return "ok"

        policy = RetryPolicy(max_retries=1, base_delay=1.0, max_delay=60.0)
        await execute_with_retry(op, policy, sleep=sleep, rng=_FixedRng(0.0))
        assert sleep.delays == [9.0]


# ---------------------------------------------------------------------------
# suggest_optimal_interval
# ---------------------------------------------------------------------------


class TestSuggestOptimalInterval:
    @pytest.mark.parametrize(
        ("errors", "expected"),
        [(0, 60), (1, 150), (2, 180), (4, 240), (6, 300), (12, 300)],
    )
    def test_factor_table(self, errors: int, expected: int) -> None:
        assert suggest_optimal_interval(errors, 60) == expected

    def test_floors_fractional_results(self) -> None:
        assert suggest_optimal_interval(1, 7) == 17

    def test_growth_compounds_when_fed_back(self) -> None:
        interval = 60
        for errors in (1, 2):
            interval = suggest_optimal_interval(errors, interval)
        assert interval == 450
