"""Directives: the structured instruction a generation response carries.

A generation response is expected to be a single JSON object such as::

    {"type": "create", "filepath": "notes/todo.md", "file": "# TODO\\n"}

Surrounding chatter is tolerated: when the whole text is not an object, the
span from the first ``{`` to the last ``}`` is parsed instead.
"""

from __future__ import annotations

import json
import logging
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from routinebot.core.exceptions import GenerationError

__all__ = ["DirectiveType", "Directive", "parse_directive"]

logger = logging.getLogger(__name__)


class DirectiveType(StrEnum):
    CREATE = "create"
    CHANGE = "change"
    DELETE = "delete"
    EXECUTE = "execute"
    DONE = "done"


class Directive(BaseModel):
    """One side effect requested by the generation backend.

    Attributes:
        type: What to do.
        filepath: Target file for ``create`` / ``change`` / ``delete``,
            relative to the working directory.
        file: New file content for ``create`` / ``change``.
        command: Shell command for ``execute``.
        directory: Optional sub-directory to run ``execute`` in.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: DirectiveType
    filepath: str | None = None
    file: str | None = None
    command: str | None = None
    directory: str | None = None

    @model_validator(mode="after")
    def _check_required_fields(self) -> Directive:
        if self.type in (DirectiveType.CREATE, DirectiveType.CHANGE):
            if not self.filepath or self.file is None:
                raise ValueError(f"'{self.type}' needs 'filepath' and 'file'")
        elif self.type is DirectiveType.DELETE and not self.filepath:
            raise ValueError("'delete' needs 'filepath'")
        elif self.type is DirectiveType.EXECUTE and not self.command:
            raise ValueError("'execute' needs 'command'")
        return self

    @property
    def target(self) -> str | None:
        """The file path or command this directive acts on."""
        if self.type is DirectiveType.EXECUTE:
            return self.command
        return self.filepath


def _json_span(text: str) -> str | None:
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return stripped
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def parse_directive(text: str) -> Directive:
    """Parse the directive out of a generation response.

    Raises:
        GenerationError: If *text* holds no JSON object, the JSON is invalid,
            or the object is not a valid :class:`Directive`.
    """
    span = _json_span(text or "")
    if span is None:
        raise GenerationError("No JSON object found in the generation response")
    try:
        payload = json.loads(span)
    except json.JSONDecodeError as exc:
        logger.debug("Unparsable generation response: %.200s", text)
        raise GenerationError(f"Invalid JSON in the generation response: {exc}") from exc
    if not isinstance(payload, dict):
        raise GenerationError("Generation response JSON is not an object")
    try:
        return Directive.model_validate(payload)
    except ValidationError as exc:
        raise GenerationError(
            f"Generation response is not a valid directive: {exc.errors()[0]['msg']}"
        ) from exc
