"""Async HTTP client for the routine catalog / generation service.

Wraps :class:`httpx.AsyncClient` with:

* **Bearer auth**: ``Authorization: Bearer <api_token>`` when a token is set.
* **Transport retries**: refused connections, timeouts and HTTP 5xx are
  retried with exponential back-off and jitter via :mod:`tenacity`.
* **No rate-limit retries here**: HTTP 429 (or a ``RATE_LIMIT_EXCEEDED``
  error body) raises :class:`~routinebot.core.exceptions.ServiceRateLimitError`
  on the first occurrence.  Callers decide: the generation path retries it
  through :func:`~routinebot.orchestrator.backoff.execute_with_retry`, the
  catalog path lets the orchestrator stretch its cycle interval.
* **Structured error mapping**: 401/403 raise
  :class:`~routinebot.core.exceptions.ServiceAuthError`, other 4xx raise
  :class:`~routinebot.core.exceptions.ServiceRequestError`, exhausted
  transport retries raise
  :class:`~routinebot.core.exceptions.ServiceUnavailableError`.

Typical usage::

    from routinebot.service.http_client import ServiceHttpClient

    async with ServiceHttpClient("http://localhost:3000", token="...") as client:
        payload = await client.get_json("/api/routines", params={"active": "true"})
"""

from __future__ import annotations

import logging
import random
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from routinebot.core.exceptions import (
    ServiceAuthError,
    ServiceRateLimitError,
    ServiceRequestError,
    ServiceUnavailableError,
)
from routinebot.orchestrator.backoff import RATE_LIMIT_MARKER

__all__ = ["ServiceHttpClient"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: HTTP status codes that signal a transient server-side fault (safe to retry).
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

#: Default request timeout in seconds.
_DEFAULT_TIMEOUT: Final[float] = 10.0

#: Default total attempts for transport failures (1 initial + 2 retries).
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

#: Cap on the exponential part of the transport back-off (seconds).
_MAX_BACKOFF_BASE: Final[float] = 30.0

#: Cap on the jitter added on top (seconds).
_MAX_BACKOFF_JITTER: Final[float] = 5.0


class _RetryableServerError(ServiceUnavailableError):
    """Internal: a 5xx response, raised so tenacity retries it."""


def _transport_wait(retry_state: RetryCallState) -> float:
    """1 s, 2 s, 4 s … capped, plus up to :data:`_MAX_BACKOFF_JITTER` of jitter."""
    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    return base + random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))


class ServiceHttpClient:
    """JSON-over-HTTP client bound to one service base URL.

    Use as an ``async with`` context manager so the connection pool is
    closed on exit.  Methods return the decoded JSON body (or ``None`` for an
    empty body) on HTTP 2xx and raise on every other outcome.

    Args:
        base_url: Service root, e.g. ``http://localhost:3000``.
        token: Bearer token; empty means unauthenticated requests.
        timeout: Default per-request timeout in seconds.
        max_attempts: Total attempts for transport / 5xx failures (≥ 1).
        transport: Optional :class:`httpx.AsyncBaseTransport`, used by tests
            to inject :class:`httpx.MockTransport`.

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout: float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ServiceHttpClient:
        self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the connection pool.  Safe to call more than once."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("ServiceHttpClient session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # Public request methods
    # ------------------------------------------------------------------

    async def get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """``GET`` *path* and return the decoded JSON body."""
        response = await self._request_with_retry("GET", path, params=params, timeout=timeout)
        return _decode(response)

    async def post_json(
        self,
        path: str,
        payload: Any,
        *,
        timeout: float | None = None,
    ) -> Any:
        """``POST`` *payload* as JSON to *path* and return the decoded JSON body."""
        response = await self._request_with_retry("POST", path, json=payload, timeout=timeout)
        return _decode(response)

    async def health_check(self) -> bool:
        """``True`` if the service root answers with a 2xx status."""
        try:
            await self._single_request("GET", "/", params=None, json=None, timeout=None)
        except (ServiceUnavailableError, ServiceRequestError, ServiceAuthError,
                ServiceRateLimitError, httpx.TransportError):
            return False
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            headers = {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            )
            logger.debug("ServiceHttpClient session opened (base_url=%r).", self._base_url)
        return self._http

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "HTTP %s %s attempt %d/%d failed (%s). Retrying in %.1f s",
                method,
                path,
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
                rs.upcoming_sleep,
            )

        response: httpx.Response | None = None
        try:
            async for attempt in AsyncRetrying(
                wait=_transport_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((_RetryableServerError, httpx.TransportError)),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    response = await self._single_request(
                        method, path, params=params, json=json, timeout=timeout
                    )
        except httpx.TransportError as exc:
            raise ServiceUnavailableError(
                self._base_url, f"{method} {path} failed: {type(exc).__name__}: {exc}"
            ) from exc

        assert response is not None, "tenacity exited without a response or exception"
        return response

    async def _single_request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any | None,
        timeout: float | None,
    ) -> httpx.Response:
        client = self._ensure_client()
        kwargs: dict[str, Any] = {"params": params, "json": json}
        if timeout is not None:
            kwargs["timeout"] = timeout

        response = await client.request(method, path, **kwargs)
        logger.debug("HTTP %s %s → %d", method, path, response.status_code)

        if response.status_code == 429 or _has_rate_limit_marker(response):
            retry_after = _parse_retry_after(response)
            logger.warning(
                "Service rate limit on %s %s (retry_after=%s).", method, path, retry_after
            )
            raise ServiceRateLimitError(self._base_url, retry_after=retry_after)

        if response.is_success:
            return response

        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableServerError(
                self._base_url, f"Transient HTTP {response.status_code} on {method} {path}"
            )

        detail = _error_message(response)
        if response.status_code in (401, 403):
            raise ServiceAuthError(
                self._base_url, f"HTTP {response.status_code} on {method} {path}: {detail}"
            )
        raise ServiceRequestError(
            self._base_url,
            f"HTTP {response.status_code} on {method} {path}: {detail}",
            status_code=response.status_code,
        )


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    body = _json_or_none(response)
    return body if body is not None else response.text


def _has_rate_limit_marker(response: httpx.Response) -> bool:
    """Error bodies of the form ``{"code": "RATE_LIMIT_EXCEEDED"}`` count as 429."""
    if response.is_success:
        return False
    body = _json_or_none(response)
    if isinstance(body, dict):
        return RATE_LIMIT_MARKER in (body.get("code"), body.get("error"))
    return False


def _error_message(response: httpx.Response) -> str:
    body = _json_or_none(response)
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)[:200]
    return response.text[:200]


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Seconds from the ``Retry-After`` header or a JSON ``retryAfter`` field."""
    header = response.headers.get("retry-after", "")
    if header:
        try:
            return max(float(header), 0.0) or None
        except ValueError:
            logger.debug("Could not parse Retry-After header %r.", header)

    body = _json_or_none(response)
    if isinstance(body, dict):
        value = body.get("retryAfter") or body.get("retry_after")
        if value is not None:
            try:
                return max(float(value), 0.0) or None
            except (TypeError, ValueError):
                logger.debug("Could not parse retryAfter field %r.", value)
    return None
