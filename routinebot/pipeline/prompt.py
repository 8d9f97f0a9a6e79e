"""Prompt construction for routine dispatches.

The prompt has four parts, in order: the routine itself (name, description,
numbered steps with their parameters), the dedup hints from previous
executions, the directive format instructions, and a listing of the working
directory.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Final

from routinebot.core.models import Routine

__all__ = ["build_prompt", "describe_directory", "DIRECTIVE_INSTRUCTIONS"]

logger = logging.getLogger(__name__)

#: Names skipped when listing the working directory.
IGNORED_NAMES: Final[tuple[str, ...]] = ("node_modules", ".git", "dist", "*.log")

#: Directory listing depth (the root's children are depth 1).
MAX_DEPTH: Final[int] = 2

#: Listing is truncated after this many lines.
MAX_ENTRIES: Final[int] = 200

DIRECTIVE_INSTRUCTIONS: Final[str] = """\
Please return the execution content in the following JSON format. No messages needed, return only JSON:
{"type": "create|change|delete|execute|done", "filepath": "<file path>", "file": "<file content>", "command": "<command>"}

- To create a file: type="create"
- To modify a file: type="change"
- To delete a file: type="delete"
- To execute a command: type="execute"
- To do nothing: type="done"

Important:
1. Avoid exactly the same operations as previous executions
2. Do not recreate files that have already been created
3. Do not repeatedly execute the same commands
4. Proceed with tasks from new perspectives or different approaches
5. Check whether files already exist and use "change" where appropriate"""


def _format_parameters(parameters: Any) -> str | None:
    if parameters is None or parameters == "" or parameters == {}:
        return None
    if isinstance(parameters, str):
        try:
            parameters = json.loads(parameters)
        except json.JSONDecodeError:
            return parameters
    return json.dumps(parameters, ensure_ascii=False, default=str)


def build_prompt(
    routine: Routine,
    dedup_hints: Sequence[str] = (),
    directory_state: str = "",
) -> str:
    """Return the full generation prompt for one dispatch of *routine*."""
    lines = [f"Routine: {routine.name}", f"Description: {routine.description}", ""]

    steps = routine.ordered_steps()
    if steps:
        lines.append("Steps:")
        for index, step in enumerate(steps, start=1):
            line = f"{index}. {step.content}"
            params = _format_parameters(step.parameters)
            if params:
                line += f" (Parameters: {params})"
            lines.append(line)
        lines.append("")

    if dedup_hints:
        lines.append("Previous executions (avoid repeating them):")
        lines.extend(f"{index}. {hint}" for index, hint in enumerate(dedup_hints, start=1))
        lines.append("Take a new approach; do not repeat the files or commands above.")
    else:
        lines.append("No previous executions. Take a fresh approach.")
    lines.append("")

    lines.append(DIRECTIVE_INSTRUCTIONS)
    lines.append("")
    lines.append("Current directory state:")
    lines.append(directory_state or "(empty)")
    return "\n".join(lines)


def _ignored(name: str) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in IGNORED_NAMES)


def describe_directory(root: Path | str, max_depth: int = MAX_DEPTH) -> str:
    """Return an indented listing of *root* down to *max_depth* levels.

    Directories end with ``/``.  Hidden state files of routinebot itself are
    listed like any other file.  Unreadable directories are skipped.
    """
    root = Path(root)
    lines: list[str] = [f"{root.name or root}/"]

    def _walk(directory: Path, depth: int) -> None:
        if depth > max_depth or len(lines) > MAX_ENTRIES:
            return
        try:
            entries = sorted(os.scandir(directory), key=lambda e: (not e.is_dir(), e.name))
        except OSError:
            logger.debug("Cannot list %s.", directory)
            return
        for entry in entries:
            if _ignored(entry.name):
                continue
            if len(lines) > MAX_ENTRIES:
                return
            is_dir = entry.is_dir(follow_symlinks=False)
            lines.append("  " * depth + entry.name + ("/" if is_dir else ""))
            if is_dir:
                _walk(Path(entry.path), depth + 1)

    _walk(root, 1)
    if len(lines) > MAX_ENTRIES:
        lines = [*lines[:MAX_ENTRIES], "..."]
    return "\n".join(lines)
