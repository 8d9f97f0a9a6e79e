"""Routinebot exception taxonomy.

Every custom exception inherits from :class:`RoutinebotError`.  Exceptions
raised at the boundary with a remote service carry an explicit
:class:`~routinebot.core.models.FailureKind` so the backoff engine can decide
on retries without inspecting message text:

    Layer hierarchy
    ---------------
    RoutinebotError
    ├── ConfigError
    ├── StorageError
    ├── ServiceError                    (failure_kind varies)
    │   ├── ServiceRateLimitError       RATE_LIMITED
    │   ├── ServiceUnavailableError     TRANSIENT
    │   ├── ServiceAuthError            PERMANENT
    │   └── ServiceRequestError         PERMANENT
    ├── GenerationError                 PERMANENT
    ├── DirectiveError                  PERMANENT
    ├── DispatchTimeoutError            TRANSIENT
    └── OrchestratorError

Usage:

    from routinebot.core.exceptions import ServiceRateLimitError

    raise ServiceRateLimitError("catalog", retry_after=30.0)
"""

from __future__ import annotations

import logging
from typing import ClassVar

from routinebot.core.models import FailureKind

__all__ = [
    "RoutinebotError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    # Remote service
    "ServiceError",
    "ServiceRateLimitError",
    "ServiceUnavailableError",
    "ServiceAuthError",
    "ServiceRequestError",
    # Execution pipeline
    "GenerationError",
    "DirectiveError",
    "DispatchTimeoutError",
    # Orchestrator
    "OrchestratorError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class RoutinebotError(Exception):
    """Root exception for all Routinebot errors.

    Subclasses that describe a failed operation declare a class-level
    :attr:`failure_kind`; ``None`` means the error is not an operation
    failure (e.g. bad configuration).
    """

    failure_kind: ClassVar[FailureKind | None] = None


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(RoutinebotError):
    """Raised when the application configuration is invalid or incomplete.

    Examples:
        - The service base URL is blank.
        - ``--set`` was given without the ``ID:VALUE`` separator.
    """


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(RoutinebotError):
    """Raised when the local history database cannot be read or written."""


# ---------------------------------------------------------------------------
# Remote service layer
# ---------------------------------------------------------------------------


class ServiceError(RoutinebotError):
    """Base class for failures talking to the routine / generation service.

    Args:
        service: Short label of the remote collaborator (``"catalog"``,
            ``"generation"``, or a base URL).
        message: Human-readable error description.
    """

    failure_kind: ClassVar[FailureKind | None] = FailureKind.PERMANENT

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"[{service}] {message}")


class ServiceRateLimitError(ServiceError):
    """Raised when the service throttles a request (HTTP 429 or quota marker).

    Args:
        service: Short label of the remote collaborator.
        retry_after: Service-recommended wait in seconds, if known.
    """

    failure_kind: ClassVar[FailureKind | None] = FailureKind.RATE_LIMITED
    status_code: int = 429

    def __init__(self, service: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        detail = f"retry after {retry_after}s" if retry_after is not None else "no retry hint"
        super().__init__(service, f"Rate limited ({detail})")


class ServiceUnavailableError(ServiceError):
    """Raised for network-shaped failures: refused connections, timeouts, 5xx."""

    failure_kind: ClassVar[FailureKind | None] = FailureKind.TRANSIENT


class ServiceAuthError(ServiceError):
    """Raised on HTTP 401/403: the bearer token is missing, expired or invalid."""


class ServiceRequestError(ServiceError):
    """Raised for non-retryable client errors (400, 404, 422 …).

    Args:
        service: Short label of the remote collaborator.
        message: Human-readable error description.
        status_code: HTTP status code returned by the service.
    """

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(service, message)


# ---------------------------------------------------------------------------
# Execution pipeline
# ---------------------------------------------------------------------------


class GenerationError(RoutinebotError):
    """Raised when the generation service returns no usable directive.

    Examples:
        - Empty response body.
        - No JSON object anywhere in the generated text.
        - JSON that does not describe a known directive type.
    """

    failure_kind: ClassVar[FailureKind | None] = FailureKind.PERMANENT


class DirectiveError(RoutinebotError):
    """Raised when a parsed directive cannot be applied locally.

    Examples:
        - A file path that escapes the working directory.
        - A command that exits non-zero or exceeds its timeout.
    """

    failure_kind: ClassVar[FailureKind | None] = FailureKind.PERMANENT


class DispatchTimeoutError(RoutinebotError):
    """Raised when a single dispatch exceeds its own timeout budget.

    Args:
        routine_id: The routine whose dispatch timed out.
        timeout: The budget in seconds that was exceeded.
    """

    failure_kind: ClassVar[FailureKind | None] = FailureKind.TRANSIENT

    def __init__(self, routine_id: str, timeout: float) -> None:
        self.routine_id = routine_id
        self.timeout = timeout
        super().__init__(f"Dispatch of routine {routine_id!r} exceeded {timeout:.0f}s")


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(RoutinebotError):
    """Raised for errors originating in the scheduling or orchestration layer.

    Examples:
        - ``run_forever`` is entered twice on the same orchestrator.
    """
