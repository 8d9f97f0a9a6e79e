"""Routinebot application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``API_BASE_URL`` → ``api_base_url``).  CLI flags of ``routinebot run``
override a handful of these fields via :meth:`Settings.model_copy`.

Per-routine priorities, weights and the cooldown period are *not* settings:
they live in the priority document inside the working directory and are
edited with ``routinebot priority``.

Typical usage::

    from routinebot.core.settings import Settings

    settings = Settings()                      # loads from env + .env
    policy = settings.retry_policy()           # RetryPolicy for generation calls
    print(settings.priorities_path)            # <work_directory>/.routinebot-priorities.json
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from routinebot.orchestrator.backoff import RetryPolicy

__all__ = ["Settings"]

logger = logging.getLogger(__name__)

_DEFAULT_HISTORY_FILENAME = ".routinebot-history.db"


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    ``api_token`` may be left empty during development; requests are then
    sent unauthenticated and the service decides whether to reject them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Remote service
    # ------------------------------------------------------------------
    api_base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the routine catalog / generation service.",
    )
    api_token: str = Field(default="", description="Bearer token for the service.")
    llm_endpoint: str = Field(
        default="/api/llm/generate",
        description="Path of the generation endpoint, relative to api_base_url.",
    )
    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for catalog requests.",
    )
    generation_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds allowed for a single generation request.",
    )

    # ------------------------------------------------------------------
    # Working directory and local state
    # ------------------------------------------------------------------
    work_directory: str = Field(
        default=".",
        description="Directory where side effects apply and local state lives.",
    )
    priorities_filename: str = Field(
        default=".routinebot-priorities.json",
        description="Priority document file name inside work_directory.",
    )
    history_database_path: str = Field(
        default="",
        description="SQLite history path; empty means inside work_directory.",
    )
    history_dedup_limit: int = Field(
        default=3,
        ge=0,
        description="Previous executions turned into dedup hints per dispatch.",
    )

    # ------------------------------------------------------------------
    # Cycle cadence
    # ------------------------------------------------------------------
    cycle_interval: int = Field(
        default=60,
        ge=1,
        description="Base seconds to sleep between cycles.",
    )
    max_executions_per_cycle: int | None = Field(
        default=None,
        ge=0,
        description="Override for the persisted max executions per cycle.",
    )
    snapshot_every_cycles: int = Field(
        default=5,
        ge=0,
        description="Log the priority snapshot every N cycles (0 disables).",
    )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    dispatch_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds allowed for one routine dispatch end-to-end.",
    )
    dispatch_concurrency: int = Field(
        default=3,
        ge=1,
        description="Maximum routines dispatched at the same time.",
    )
    shutdown_grace_period: float = Field(
        default=5.0,
        ge=0,
        description="Seconds in-flight dispatches get to unwind on stop.",
    )
    command_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds allowed for an 'execute' directive command.",
    )

    # ------------------------------------------------------------------
    # Rate-limit retry policy (generation calls)
    # ------------------------------------------------------------------
    retry_max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)

    # ------------------------------------------------------------------
    # Runtime flags
    # ------------------------------------------------------------------
    dry_run: bool = Field(
        default=False,
        description="Log directives instead of applying them.",
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("api_base_url must not be blank")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_retry_delays(self) -> Settings:
        """Ensure base ≤ max for the retry delays."""
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError(
                f"retry_base_delay ({self.retry_base_delay}) "
                f"> retry_max_delay ({self.retry_max_delay})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    def retry_policy(self) -> RetryPolicy:
        """Build the :class:`RetryPolicy` used for rate-limited generation calls."""
        from routinebot.orchestrator.backoff import RetryPolicy

        return RetryPolicy(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    @property
    def work_directory_resolved(self) -> Path:
        """Return the working directory as a resolved :class:`~pathlib.Path`."""
        return Path(self.work_directory).expanduser().resolve()

    @property
    def priorities_path(self) -> Path:
        """Full path of the priority document."""
        return self.work_directory_resolved / self.priorities_filename

    @property
    def history_database_path_resolved(self) -> Path:
        """Full path of the local execution history database."""
        if self.history_database_path:
            return Path(self.history_database_path).expanduser().resolve()
        return self.work_directory_resolved / _DEFAULT_HISTORY_FILENAME

    @property
    def api_configured(self) -> bool:
        """``True`` if a bearer token is set."""
        return bool(self.api_token)
