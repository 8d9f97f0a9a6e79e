"""Unit tests for the ``routinebot`` command line.

The commands are exercised through :func:`routinebot.__main__.main` with a
temporary working directory.  ``run`` is tested with the scheduler
entry-points patched out.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from routinebot.__main__ import _parse_assignment, build_parser, main
from routinebot.core.exceptions import ConfigError
from routinebot.core.models import ExecutionRecord, FailureKind
from routinebot.history.database import open_db
from routinebot.history.repository import ExecutionHistoryRepository
from routinebot.orchestrator.cycle import CycleReport
from routinebot.priorities.store import PriorityStore

pytestmark = pytest.mark.usefixtures("clean_env")


def _seed_store(directory: Path, make_routine, *ids: str) -> Path:
    path = directory / ".routinebot-priorities.json"
    PriorityStore.load(path).reconcile([make_routine(rid) for rid in ids])
    return path


def _seed_history(directory: Path, *records: ExecutionRecord) -> None:
    async def _write() -> None:
        conn = await open_db(directory / ".routinebot-history.db")
        try:
            repo = ExecutionHistoryRepository(conn)
            for record in records:
                await repo.record(record)
        finally:
            await conn.close()

    asyncio.run(_write())


def _execution(n: int, *, success: bool = True) -> ExecutionRecord:
    return ExecutionRecord(
        id=f"e{n}",
        routine_id="a",
        routine_name="Tidy docs",
        success=success,
        message="Created notes.md" if success else "create failed",
        error=None if success else "disk full",
        failure_kind=None if success else FailureKind.PERMANENT,
        duration_ms=120,
        executed_at=datetime.now(UTC) - timedelta(minutes=10 - n),
        directive_type="create",
        directive_target="notes.md",
    )


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseAssignment:
    def test_int(self) -> None:
        assert _parse_assignment("abc:7", int) == ("abc", 7)

    def test_id_may_contain_colons(self) -> None:
        assert _parse_assignment("team:docs:2.5", float) == ("team:docs", 2.5)

    @pytest.mark.parametrize("raw", ["abc", ":3", "abc:", "abc:high"])
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ConfigError):
            _parse_assignment(raw, int)


class TestParser:
    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_run_flags(self) -> None:
        args = build_parser().parse_args(
            ["run", "--once", "--dry-run", "--interval", "30", "--max-executions", "2"]
        )
        assert args.once and args.dry_run
        assert (args.interval, args.max_executions) == (30, 2)

    def test_repeatable_assignments(self) -> None:
        args = build_parser().parse_args(["priority", "--set", "a:1", "--set", "b:2"])
        assert args.set_priority == ["a:1", "b:2"]
        assert args.weight == []


# ---------------------------------------------------------------------------
# priority
# ---------------------------------------------------------------------------


class TestPriorityCommand:
    def test_show_empty(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["priority", "--directory", str(tmp_path)]) == 0
        out = capsys.readouterr().out
        assert "max_executions_per_cycle=3" in out
        assert "No routines recorded yet." in out

    def test_set_and_weight_are_clamped_and_persisted(
        self, tmp_path: Path, make_routine, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _seed_store(tmp_path, make_routine, "a", "b")

        code = main(
            ["priority", "--directory", str(tmp_path), "--set", "a:15", "--weight", "b:2.5"]
        )

        assert code == 0
        out = capsys.readouterr().out
        assert "a: priority set to 10" in out
        assert "b: weight set to 2.5" in out
        reloaded = PriorityStore.load(path)
        assert reloaded.get("a").priority == 10
        assert reloaded.get("b").weight == 2.5

    def test_show_lists_entries(
        self, tmp_path: Path, make_routine, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed_store(tmp_path, make_routine, "a")
        assert main(["priority", "--show", "--directory", str(tmp_path)]) == 0
        out = capsys.readouterr().out
        assert "ROUTINE" in out
        assert "never" in out

    def test_unknown_routine_fails(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["priority", "--directory", str(tmp_path), "--set", "ghost:3"]) == 1
        assert "ghost: unknown routine" in capsys.readouterr().err

    def test_malformed_assignment_fails(self, tmp_path: Path) -> None:
        assert main(["priority", "--directory", str(tmp_path), "--set", "oops"]) == 1


# ---------------------------------------------------------------------------
# history / stats
# ---------------------------------------------------------------------------


class TestHistoryCommands:
    def test_history_without_database(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["history", "--directory", str(tmp_path)]) == 0
        assert "No executions recorded." in capsys.readouterr().out
        assert not (tmp_path / ".routinebot-history.db").exists()

    def test_history_lists_records(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed_history(tmp_path, _execution(1), _execution(2, success=False))

        assert main(["history", "--directory", str(tmp_path), "--limit", "5"]) == 0

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 2
        assert "FAIL Tidy docs [create notes.md] 120ms: disk full" in lines[0]
        assert "ok   Tidy docs [create notes.md] 120ms: Created notes.md" in lines[1]

    def test_stats_without_database(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["stats", "--directory", str(tmp_path), "--days", "3"]) == 0
        assert "No executions in the last 3 days." in capsys.readouterr().out

    def test_stats_summary(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _seed_history(tmp_path, _execution(1), _execution(2, success=False))

        assert main(["stats", "--directory", str(tmp_path)]) == 0

        out = capsys.readouterr().out
        assert "Last 7 days: 2 executions, 1 succeeded, 1 failed (50.00% success)" in out
        assert "Tidy docs (a): 2 runs, 1 ok, 1 failed" in out


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRunCommand:
    def test_once_applies_overrides(self, tmp_path: Path) -> None:
        with patch(
            "routinebot.orchestrator.scheduler.run_once",
            new=AsyncMock(return_value=CycleReport(cycle=1, cycle_id="abcd1234")),
        ) as run_once:
            code = main(
                [
                    "run",
                    "--once",
                    "--dry-run",
                    "--interval",
                    "30",
                    "--max-executions",
                    "2",
                    "--directory",
                    str(tmp_path),
                    "--api-url",
                    "https://routines.example.com/",
                ]
            )

        assert code == 0
        settings = run_once.await_args.args[0]
        assert settings.cycle_interval == 30
        assert settings.max_executions_per_cycle == 2
        assert settings.dry_run is True
        assert settings.work_directory == str(tmp_path)
        assert settings.api_base_url == "https://routines.example.com"

    def test_once_reports_cycle_failure(self) -> None:
        report = CycleReport(
            cycle=1, cycle_id="abcd1234", failure="down", failure_kind=FailureKind.TRANSIENT
        )
        with patch(
            "routinebot.orchestrator.scheduler.run_once", new=AsyncMock(return_value=report)
        ):
            assert main(["run", "--once"]) == 1

    def test_continuous(self) -> None:
        with patch("routinebot.orchestrator.scheduler.run_continuous", new=AsyncMock()) as run:
            assert main(["run"]) == 0
        run.assert_awaited_once()

    @pytest.mark.parametrize("argv", [["--interval", "0"], ["--max-executions", "-1"]])
    def test_invalid_overrides(self, argv: list[str]) -> None:
        with patch("routinebot.orchestrator.scheduler.run_once", new=AsyncMock()) as run_once:
            assert main(["run", "--once", *argv]) == 1
        run_once.assert_not_awaited()

    def test_invalid_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CYCLE_INTERVAL", "zero")
        assert main(["run", "--once"]) == 1

    def test_bad_log_level(self) -> None:
        assert main(["--log-level", "LOUD", "history"]) == 1
