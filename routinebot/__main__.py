"""Routinebot process entry-point.

Usage:
    python -m routinebot [--log-level LEVEL] [--log-format FORMAT] COMMAND ...

Commands:
    run        Run scheduling cycles (continuous by default, ``--once`` for one).
    priority   Show or edit per-routine priorities and weights.
    history    List recent executions from the local history.
    stats      Summarise the local history over the last N days.

``configure_logging()`` is called before anything else so that every
subsequent import already has a working logger.  The orchestration logic
lives in ``routinebot.orchestrator``; this module only parses arguments,
builds :class:`~routinebot.core.settings.Settings` and hands off.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from routinebot.core import configure_logging
from routinebot.core.exceptions import ConfigError, RoutinebotError
from routinebot.core.settings import Settings

if TYPE_CHECKING:
    from routinebot.core.models import PrioritySnapshot

logger = logging.getLogger("routinebot")


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _parse_assignment(raw: str, kind: type[int] | type[float]) -> tuple[str, Any]:
    """Split ``ID:VALUE`` into ``(id, kind(value))``.

    Raises:
        ConfigError: If *raw* is not of the form ``ID:VALUE``.
    """
    routine_id, sep, value = raw.rpartition(":")
    if not sep or not routine_id or not value:
        raise ConfigError(f"Expected ID:VALUE, got {raw!r}")
    try:
        return routine_id, kind(value)
    except ValueError:
        raise ConfigError(f"Invalid {kind.__name__} value in {raw!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="routinebot",
        description="Autonomous scheduler for generative routines.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run scheduling cycles.")
    run.add_argument("--interval", type=int, metavar="S", help="Base seconds between cycles.")
    run.add_argument(
        "--max-executions",
        type=int,
        metavar="N",
        help="Routines dispatched per cycle (overrides the priority document).",
    )
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Log directives instead of applying them.",
    )
    run.add_argument("--directory", metavar="D", help="Working directory.")
    run.add_argument("--api-url", metavar="U", help="Base URL of the routine service.")

    priority = sub.add_parser("priority", help="Show or edit routine priorities.")
    priority.add_argument("--show", action="store_true", help="Print the priority table.")
    priority.add_argument(
        "--set",
        dest="set_priority",
        action="append",
        default=[],
        metavar="ID:P",
        help="Set the priority (1-10) of a routine. Repeatable.",
    )
    priority.add_argument(
        "--weight",
        action="append",
        default=[],
        metavar="ID:W",
        help="Set the weight (0.1-5.0) of a routine. Repeatable.",
    )
    priority.add_argument("--directory", metavar="D", help="Working directory.")

    history = sub.add_parser("history", help="List recent executions.")
    history.add_argument("--limit", type=int, default=20, metavar="N")
    history.add_argument("--routine-id", metavar="ID", help="Only this routine.")
    history.add_argument("--directory", metavar="D", help="Working directory.")

    stats = sub.add_parser("stats", help="Summarise recent executions.")
    stats.add_argument("--days", type=int, default=7, metavar="N")
    stats.add_argument("--directory", metavar="D", help="Working directory.")

    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    """Load settings from the environment and apply CLI overrides."""
    overrides: dict[str, Any] = {}
    if getattr(args, "directory", None):
        overrides["work_directory"] = args.directory
    if getattr(args, "api_url", None):
        overrides["api_base_url"] = args.api_url.rstrip("/")
    if getattr(args, "interval", None) is not None:
        if args.interval < 1:
            raise ConfigError("--interval must be at least 1 second")
        overrides["cycle_interval"] = args.interval
    if getattr(args, "max_executions", None) is not None:
        if args.max_executions < 0:
            raise ConfigError("--max-executions must not be negative")
        overrides["max_executions_per_cycle"] = args.max_executions
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    try:
        settings = Settings()
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
    return settings.model_copy(update=overrides) if overrides else settings


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    from routinebot.orchestrator.scheduler import run_continuous, run_once  # noqa: PLC0415

    settings = _settings_for(args)
    if args.once:
        logger.info("Running a single cycle (--once).")
        report = asyncio.run(run_once(settings))
        return 1 if report.failure is not None else 0

    logger.info("Running in continuous mode (Ctrl+C to stop).")
    asyncio.run(run_continuous(settings))
    return 0


def _cmd_priority(args: argparse.Namespace) -> int:
    from routinebot.priorities.store import PriorityStore  # noqa: PLC0415

    settings = _settings_for(args)
    priorities = [_parse_assignment(raw, int) for raw in args.set_priority]
    weights = [_parse_assignment(raw, float) for raw in args.weight]
    store = PriorityStore.load(settings.priorities_path)

    status = 0
    for routine_id, value in priorities:
        if store.adjust_priority(routine_id, value):
            print(f"{routine_id}: priority set to {store.get(routine_id).priority}")  # noqa: T201
        else:
            print(f"{routine_id}: unknown routine", file=sys.stderr)  # noqa: T201
            status = 1
    for routine_id, value in weights:
        if store.adjust_weight(routine_id, value):
            print(f"{routine_id}: weight set to {store.get(routine_id).weight:.1f}")  # noqa: T201
        else:
            print(f"{routine_id}: unknown routine", file=sys.stderr)  # noqa: T201
            status = 1

    if args.show or not (priorities or weights):
        _print_priorities(store.snapshot())
    return status


def _print_priorities(snapshot: PrioritySnapshot) -> None:
    gs = snapshot.global_settings
    print(  # noqa: T201
        f"max_executions_per_cycle={gs.max_executions_per_cycle} "
        f"cooldown={gs.cooldown_period_seconds}s "
        f"minimum_interval={gs.minimum_interval_seconds}s"
    )
    if not snapshot.entries:
        print("No routines recorded yet.")  # noqa: T201
        return
    print(f"{'ROUTINE':<24} {'PRIO':>4} {'WEIGHT':>6} {'RATE':>5} {'RUNS':>5}  LAST")  # noqa: T201
    for e in sorted(snapshot.entries, key=lambda e: (-e.priority, e.routine_id)):
        last = e.last_executed.strftime("%Y-%m-%d %H:%M") if e.last_executed else "never"
        print(  # noqa: T201
            f"{e.routine_id:<24} {e.priority:>4} {e.weight:>6.1f} "
            f"{e.success_rate:>5.2f} {e.execution_count:>5}  {last}"
        )


async def _with_history(settings: Settings, fn: Any) -> Any:
    from routinebot.history.database import open_db  # noqa: PLC0415
    from routinebot.history.repository import ExecutionHistoryRepository  # noqa: PLC0415

    path = settings.history_database_path_resolved
    if not path.exists():
        return await fn(None)
    conn = await open_db(path)
    try:
        return await fn(ExecutionHistoryRepository(conn))
    finally:
        await conn.close()


def _cmd_history(args: argparse.Namespace) -> int:
    settings = _settings_for(args)

    async def _list(repo: Any) -> list[Any]:
        if repo is None:
            return []
        return await repo.recent(args.limit, routine_id=args.routine_id)

    records = asyncio.run(_with_history(settings, _list))
    if not records:
        print("No executions recorded.")  # noqa: T201
        return 0
    for r in records:
        when = r.executed_at.strftime("%Y-%m-%d %H:%M:%S")
        status = "ok  " if r.success else "FAIL"
        action = f" [{r.directive_type} {r.directive_target or ''}]".rstrip() if r.directive_type else ""
        detail = r.message if r.success else (r.error or r.message)
        name = r.routine_name or r.routine_id
        print(f"{when} {status} {name}{action} {r.duration_ms}ms: {detail}")  # noqa: T201
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    settings = _settings_for(args)

    async def _summarise(repo: Any) -> Any:
        if repo is None:
            return None
        return await repo.summary(args.days)

    summary = asyncio.run(_with_history(settings, _summarise))
    if summary is None or summary.total == 0:
        print(f"No executions in the last {args.days} days.")  # noqa: T201
        return 0
    print(  # noqa: T201
        f"Last {summary.days} days: {summary.total} executions, "
        f"{summary.succeeded} succeeded, {summary.failed} failed "
        f"({summary.success_rate:.2f}% success), "
        f"average {summary.average_duration_ms} ms"
    )
    for routine_id, s in sorted(summary.routines.items()):
        print(  # noqa: T201
            f"  {s.name} ({routine_id}): {s.executions} runs, "
            f"{s.successes} ok, {s.failures} failed, avg {s.avg_duration_ms:.0f} ms"
        )
    return 0


_COMMANDS = {
    "run": _cmd_run,
    "priority": _cmd_priority,
    "history": _cmd_history,
    "stats": _cmd_stats,
}


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"routinebot: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        return 1

    try:
        return _COMMANDS[args.command](args)
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        return 1
    except RoutinebotError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
