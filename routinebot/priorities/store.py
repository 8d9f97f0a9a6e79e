"""Persisted per-routine scheduling state.

:class:`PriorityStore` owns the single :class:`~routinebot.core.models.PriorityDocument`
of a working directory.  It is loaded once at start-up, mutated in place for
the whole run and flushed after every mutating call.  Each flush writes a
complete snapshot to a temporary file and swaps it in with :func:`os.replace`,
so a crash mid-write never leaves a truncated document behind.

Flush failures are logged and swallowed: the in-memory state stays
authoritative for the rest of the process and only durability of that one
mutation is lost.

Two-phase outcome recording
~~~~~~~~~~~~~~~~~~~~~~~~~~~
Building a batch needs every pick to put its routine on cooldown *before*
the next pick is drawn, long before the real outcome is known.

* :meth:`PriorityStore.reserve` is the provisional write.  It only sets
  ``last_executed``.
* :meth:`PriorityStore.record_outcome` is the commit.  It sets
  ``last_executed`` again, increments ``execution_count`` and folds the
  outcome into ``success_rate``.

``execution_count`` therefore counts committed outcomes only.

Typical usage::

    from routinebot.priorities.store import PriorityStore

    store = PriorityStore.load(settings.priorities_path)
    store.reconcile(routines)
    store.reserve("abc123")
    ...
    store.record_outcome("abc123", success=True)
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

from pydantic import ValidationError

from routinebot.core import events
from routinebot.core.models import (
    GlobalSettings,
    PriorityDocument,
    PriorityEntry,
    PrioritySnapshot,
    Routine,
)

__all__ = ["PriorityStore", "EMA_ALPHA"]

logger = logging.getLogger(__name__)

#: Weight of the newest outcome in the success-rate moving average.
EMA_ALPHA: Final[float] = 0.2


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PriorityStore:
    """In-memory priority document with write-through persistence.

    All mutators take one :class:`threading.Lock`, so outcome commits coming
    from concurrently finishing dispatches never interleave on an entry.

    Args:
        path: Location of the JSON document.
        document: Initial state.  Defaults to an empty document.
        clock: Returns the current time as an aware UTC datetime.
    """

    def __init__(
        self,
        path: Path | str,
        document: PriorityDocument | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._path = Path(path)
        self._clock = clock
        self._lock = threading.Lock()
        self._global = (document.global_settings if document else GlobalSettings()).model_copy()
        self._entries: dict[str, PriorityEntry] = {}
        for entry in document.priorities if document else ():
            # First occurrence wins if a hand-edited document repeats an id.
            self._entries.setdefault(entry.routine_id, entry.model_copy())

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        path: Path | str,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> PriorityStore:
        """Read the document at *path*; fall back to defaults if absent or unreadable."""
        path = Path(path)
        document: PriorityDocument | None = None
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No priority document at %s; starting with defaults.", path)
        except OSError:
            logger.warning("Could not read priority document %s.", path, exc_info=True)
        else:
            try:
                document = PriorityDocument.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning(
                    "Priority document %s is invalid (%d errors); starting with defaults.",
                    path,
                    exc.error_count(),
                )
        if document is not None:
            logger.debug(
                "Loaded %d priority entries from %s.", len(document.priorities), path
            )
        return cls(path, document, clock=clock)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._path

    @property
    def global_settings(self) -> GlobalSettings:
        """A copy of the current global settings."""
        with self._lock:
            return self._global.model_copy()

    def get(self, routine_id: str) -> PriorityEntry | None:
        """Return a copy of the entry for *routine_id*, or ``None``."""
        with self._lock:
            entry = self._entries.get(routine_id)
            return entry.model_copy() if entry is not None else None

    def snapshot(self) -> PrioritySnapshot:
        """Return a deep, read-only copy of every entry plus the global settings."""
        with self._lock:
            return PrioritySnapshot(
                entries=tuple(e.model_copy(deep=True) for e in self._entries.values()),
                global_settings=self._global.model_copy(),
            )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, routine_id: object) -> bool:
        return routine_id in self._entries

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def reconcile(self, routines: Iterable[Routine]) -> tuple[list[str], list[str]]:
        """Make the entry set match *routines* exactly.

        Routines without an entry get one with default values; entries whose
        routine is absent are deleted.  An empty input prunes everything.
        The document is written once, and only if something changed.

        Returns:
            ``(added_ids, removed_ids)``.
        """
        active_ids = list(dict.fromkeys(r.id for r in routines))
        with self._lock:
            added = [rid for rid in active_ids if rid not in self._entries]
            for rid in added:
                self._entries[rid] = PriorityEntry(routine_id=rid)
            keep = set(active_ids)
            removed = [rid for rid in self._entries if rid not in keep]
            for rid in removed:
                del self._entries[rid]
            if added or removed:
                self._flush_locked()

        if added or removed:
            logger.info(
                "Priority entries reconciled: %d added, %d removed.",
                len(added),
                len(removed),
                extra={"event": events.STORE_RECONCILED, "added": added, "removed": removed},
            )
        return added, removed

    def reserve(self, routine_id: str) -> bool:
        """Put *routine_id* on cooldown now without touching its statistics.

        Returns:
            ``False`` if the id is unknown (nothing changes).
        """
        with self._lock:
            entry = self._entries.get(routine_id)
            if entry is None:
                logger.warning("Cannot reserve unknown routine %r.", routine_id)
                return False
            entry.last_executed = self._clock()
            self._flush_locked()
        return True

    def record_outcome(self, routine_id: str, success: bool) -> bool:
        """Commit the real outcome of a dispatch.

        Sets ``last_executed``, increments ``execution_count`` and updates
        ``success_rate = (1 - α) * old + α * (1.0 if success else 0.0)``
        with α = :data:`EMA_ALPHA`.

        Returns:
            ``False`` if the id is unknown; the call is then a logged no-op.
        """
        with self._lock:
            entry = self._entries.get(routine_id)
            if entry is None:
                logger.warning("Outcome for unknown routine %r ignored.", routine_id)
                return False
            observed = 1.0 if success else 0.0
            entry.last_executed = self._clock()
            entry.execution_count += 1
            entry.success_rate = (1 - EMA_ALPHA) * entry.success_rate + EMA_ALPHA * observed
            self._flush_locked()
        return True

    def adjust_priority(self, routine_id: str, value: int) -> bool:
        """Set the priority of *routine_id*, clamped to ``[1, 10]``.

        Returns:
            Whether the id existed.  ``False`` means nothing changed.
        """
        return self._adjust(routine_id, "priority", value)

    def adjust_weight(self, routine_id: str, value: float) -> bool:
        """Set the weight of *routine_id*, clamped to ``[0.1, 5.0]``.

        Returns:
            Whether the id existed.  ``False`` means nothing changed.
        """
        return self._adjust(routine_id, "weight", value)

    def update_global_settings(self, **changes: Any) -> GlobalSettings:
        """Apply operator edits to the global settings and persist them.

        Args:
            **changes: Field names of :class:`GlobalSettings` and new values.

        Returns:
            A copy of the updated settings.

        Raises:
            ValueError: On an unknown field name.
            pydantic.ValidationError: On an invalid value.
        """
        unknown = set(changes) - set(GlobalSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown global setting(s): {', '.join(sorted(unknown))}")
        with self._lock:
            updated = self._global.model_copy(update=changes)
            self._global = GlobalSettings.model_validate(updated.model_dump())
            self._flush_locked()
            return self._global.model_copy()

    def flush(self) -> None:
        """Write the complete document now.  Errors are logged, never raised."""
        with self._lock:
            self._flush_locked()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _adjust(self, routine_id: str, field_name: str, value: float) -> bool:
        with self._lock:
            entry = self._entries.get(routine_id)
            if entry is None:
                return False
            setattr(entry, field_name, value)
            self._flush_locked()
            logger.info(
                "Routine %s %s set to %s.", routine_id, field_name, getattr(entry, field_name)
            )
        return True

    def _document(self) -> PriorityDocument:
        return PriorityDocument(
            priorities=list(self._entries.values()),
            global_settings=self._global,
        )

    def _flush_locked(self) -> None:
        payload = self._document().model_dump_json(indent=2)
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError:
            logger.error(
                "Failed to write priority document %s; keeping in-memory state.",
                self._path,
                exc_info=True,
                extra={"event": events.STORE_FLUSH_FAILED},
            )
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temp file %s.", tmp_name)
