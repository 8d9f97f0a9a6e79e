"""Apply directives to the working directory.

File directives are confined to the working directory: any path that
resolves outside it is rejected with
:class:`~routinebot.core.exceptions.DirectiveError`.  ``execute`` runs a
shell command under a timeout and fails on a non-zero exit status.

With ``dry_run=True`` every directive is logged and nothing is touched.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from routinebot.core.exceptions import DirectiveError
from routinebot.pipeline.directives import Directive, DirectiveType

__all__ = ["DirectiveExecutor"]

logger = logging.getLogger(__name__)

_OUTPUT_PREVIEW_CHARS = 200


class DirectiveExecutor:
    """Carry out :class:`~routinebot.pipeline.directives.Directive` objects.

    Args:
        work_directory: Root all file paths are resolved against.
        command_timeout: Seconds an ``execute`` command may run.
        dry_run: Log instead of applying.
    """

    def __init__(
        self,
        work_directory: Path | str,
        *,
        command_timeout: float = 30.0,
        dry_run: bool = False,
    ) -> None:
        self._root = Path(work_directory).resolve()
        self._command_timeout = command_timeout
        self._dry_run = dry_run

    async def apply(self, directive: Directive) -> str:
        """Apply *directive* and return a short description of what happened.

        Raises:
            DirectiveError: If the side effect could not be applied.
        """
        if directive.type is DirectiveType.DONE:
            return "Nothing left to do"

        if self._dry_run:
            logger.info("[dry-run] Would %s %s", directive.type, directive.target)
            return f"Dry run: {directive.type} {directive.target}"

        if directive.type is DirectiveType.EXECUTE:
            assert directive.command is not None
            return await self._run_command(directive.command, directive.directory)

        assert directive.filepath is not None
        path = self._resolve(directive.filepath)
        try:
            if directive.type is DirectiveType.CREATE:
                await asyncio.to_thread(self._write, path, directive.file or "", create=True)
                return f"Created {directive.filepath}"
            if directive.type is DirectiveType.CHANGE:
                await asyncio.to_thread(self._write, path, directive.file or "", create=False)
                return f"Updated {directive.filepath}"
            return await asyncio.to_thread(self._delete, path, directive.filepath)
        except OSError as exc:
            raise DirectiveError(
                f"{directive.type} {directive.filepath} failed: {exc.strerror or exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve(self, relative: str) -> Path:
        candidate = (self._root / relative).resolve()
        if not candidate.is_relative_to(self._root):
            raise DirectiveError(f"Path {relative!r} escapes the working directory")
        return candidate

    @staticmethod
    def _write(path: Path, content: str, *, create: bool) -> None:
        if not create and not path.is_file():
            raise FileNotFoundError(2, "File does not exist", str(path))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Wrote %s (%d bytes).", path, len(content.encode("utf-8")))

    @staticmethod
    def _delete(path: Path, label: str) -> str:
        if not path.exists():
            logger.warning("File to delete does not exist: %s", label)
            return f"Nothing to delete at {label}"
        path.unlink()
        logger.info("Deleted %s.", path)
        return f"Deleted {label}"

    async def _run_command(self, command: str, directory: str | None) -> str:
        cwd = self._resolve(directory) if directory else self._root
        logger.info("Executing command in %s: %s", cwd, command)
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=self._command_timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise DirectiveError(
                f"Command timed out after {self._command_timeout:.0f}s: {command}"
            ) from None
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        preview = output.decode("utf-8", errors="replace").strip()[:_OUTPUT_PREVIEW_CHARS]
        if proc.returncode != 0:
            raise DirectiveError(
                f"Command exited with status {proc.returncode}: {command}"
                + (f" ({preview})" if preview else "")
            )
        logger.debug("Command output: %s", preview)
        return f"Executed {command}"
