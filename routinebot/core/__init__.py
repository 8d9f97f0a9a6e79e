"""Core domain models, settings, logging configuration, and exceptions."""

from routinebot.core.exceptions import (
    ConfigError,
    DirectiveError,
    DispatchTimeoutError,
    GenerationError,
    OrchestratorError,
    RoutinebotError,
    ServiceAuthError,
    ServiceError,
    ServiceRateLimitError,
    ServiceRequestError,
    ServiceUnavailableError,
    StorageError,
)
from routinebot.core.logging_config import JsonFormatter, configure_logging
from routinebot.core.models import (
    ExecutionRecord,
    FailureKind,
    GlobalSettings,
    Outcome,
    PriorityDocument,
    PriorityEntry,
    PrioritySnapshot,
    Routine,
    RoutineStep,
)
from routinebot.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "FailureKind",
    "Routine",
    "RoutineStep",
    "PriorityEntry",
    "GlobalSettings",
    "PriorityDocument",
    "PrioritySnapshot",
    "Outcome",
    "ExecutionRecord",
    # Settings
    "Settings",
    # Exceptions
    "RoutinebotError",
    "ConfigError",
    "StorageError",
    "ServiceError",
    "ServiceRateLimitError",
    "ServiceUnavailableError",
    "ServiceAuthError",
    "ServiceRequestError",
    "GenerationError",
    "DirectiveError",
    "DispatchTimeoutError",
    "OrchestratorError",
]
