"""Execution pipeline: turn one routine into one applied side effect.

:class:`ExecutionPipeline` is the narrow interface the cycle orchestrator
dispatches through.  :class:`GenerationPipeline` is the production
implementation:

1. Build the prompt from the routine, dedup hints and a listing of the
   working directory.
2. Ask the generation backend for a directive, retrying rate limits via
   :func:`~routinebot.orchestrator.backoff.execute_with_retry`.
3. Parse the directive out of the response.
4. Apply it with :class:`~routinebot.pipeline.executor.DirectiveExecutor`.

Service and generation failures propagate as exceptions and are classified
by the orchestrator.  A directive that parses but cannot be applied becomes a
failed :class:`~routinebot.core.models.Outcome` that still carries the
directive in ``raw``.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Protocol

from routinebot.core.exceptions import DirectiveError
from routinebot.core.models import FailureKind, Outcome, Routine
from routinebot.orchestrator.backoff import RetryPolicy, execute_with_retry
from routinebot.pipeline.directives import parse_directive
from routinebot.pipeline.executor import DirectiveExecutor
from routinebot.pipeline.prompt import build_prompt, describe_directory

__all__ = ["ExecutionPipeline", "GenerationPipeline", "TextGenerator"]

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


class ExecutionPipeline(abc.ABC):
    """Dispatch target of the cycle orchestrator."""

    @abc.abstractmethod
    async def dispatch(self, routine: Routine, dedup_hints: Sequence[str] = ()) -> Outcome:
        """Run *routine* once and report what happened.

        May raise; the orchestrator turns exceptions into failed outcomes.
        """


class GenerationPipeline(ExecutionPipeline):
    """Prompt → generate → parse → apply.

    Args:
        generator: Anything with ``async generate(prompt) -> str``, normally
            :class:`~routinebot.service.generation.GenerationClient`.
        executor: Applies the parsed directive.
        work_directory: Directory described in the prompt.
        retry_policy: Bounds for retrying rate-limited generation calls.
        sleep: Sleep used between retries.
    """

    def __init__(
        self,
        generator: TextGenerator,
        executor: DirectiveExecutor,
        work_directory: Path | str,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._generator = generator
        self._executor = executor
        self._work_directory = Path(work_directory)
        self._policy = retry_policy or RetryPolicy(max_retries=2, base_delay=2.0)
        self._sleep = sleep

    async def dispatch(self, routine: Routine, dedup_hints: Sequence[str] = ()) -> Outcome:
        state = await asyncio.to_thread(describe_directory, self._work_directory)
        prompt = build_prompt(routine, dedup_hints, state)
        logger.debug("Prompt for %s is %d characters.", routine.label, len(prompt))

        response = await execute_with_retry(
            lambda: self._generator.generate(prompt),
            self._policy,
            sleep=self._sleep,
            label=f"generation for {routine.label}",
        )
        directive = parse_directive(response)
        raw = directive.model_dump(mode="json", exclude_none=True)

        try:
            message = await self._executor.apply(directive)
        except DirectiveError as exc:
            logger.warning("Directive %s for %s failed: %s", directive.type, routine.label, exc)
            return Outcome(
                success=False,
                message=f"{directive.type} failed",
                error=str(exc),
                failure_kind=FailureKind.PERMANENT,
                raw=raw,
            )
        return Outcome(success=True, message=message, raw=raw)
