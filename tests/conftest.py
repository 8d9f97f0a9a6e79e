"""Shared pytest fixtures and configuration for the Routinebot test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across unit tests.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime

import pytest
from pydantic_settings import SettingsConfigDict

from routinebot.core import configure_logging
from routinebot.core.models import Routine, RoutineStep
from routinebot.core.settings import Settings


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    ``force=True`` applies the configuration even when pytest's own
    ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove routinebot-related env vars for the duration of a test.

    Also disables pydantic-settings ``.env`` file loading so that values in a
    local ``.env`` file do not leak into Settings isolation tests.
    """
    prefixes = (
        "API_",
        "LLM_",
        "REQUEST_",
        "GENERATION_",
        "WORK_",
        "PRIORITIES_",
        "HISTORY_",
        "CYCLE_",
        "MAX_EXECUTIONS",
        "SNAPSHOT_",
        "DISPATCH_",
        "SHUTDOWN_",
        "COMMAND_",
        "RETRY_",
        "DRY_RUN",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.upper().startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def now() -> datetime:
    """A fixed, timezone-aware 'current time' for deterministic tests."""
    return datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _build_routine(routine_id: str, name: str | None = None, *steps: str) -> Routine:
    return Routine(
        id=routine_id,
        name=name or f"Routine {routine_id}",
        description=f"Description of {routine_id}",
        steps=tuple(
            RoutineStep(id=f"{routine_id}-{i}", order=i, content=content)
            for i, content in enumerate(steps, start=1)
        ),
    )


@pytest.fixture()
def make_routine():
    """Factory: ``make_routine(id, name=None, *step_contents)`` builds an active routine."""
    return _build_routine


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to test code."""
    return logging.getLogger("tests")
