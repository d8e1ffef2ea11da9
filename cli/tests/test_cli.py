"""Tests for cli/cli/app.py -- the meterbridge CLI application.

Uses typer.testing.CliRunner to invoke each command against a runtime
backed by an in-memory quota store.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from meter_engine.dirty_sets import ACTIVE_MINUTE, PENDING_RUNS
from meter_engine.runtime import JOB_NAMES, MeterRuntime
from meter_engine.state.store import MemoryQuotaStore
from typer.testing import CliRunner

from cli.app import app

runner = CliRunner()


# ---------------------------------------------------------------------------
# jobs
# ---------------------------------------------------------------------------


class TestJobsList:
    def test_json_lists_every_job(self) -> None:
        result = runner.invoke(app, ["--json", "jobs", "list"])
        assert result.exit_code == 0, result.output
        rows = json.loads(result.stdout)
        assert [row["name"] for row in rows] == list(JOB_NAMES)
        assert rows[0]["cron"] == "* * * * *"

    def test_table_output(self) -> None:
        result = runner.invoke(app, ["jobs", "list"])
        assert result.exit_code == 0
        assert "billing_flush" in result.output

    def test_invalid_cron_is_reported(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("METER_DAY_RESET_CRON", "0 0 1 * *")
        result = runner.invoke(app, ["--json", "jobs", "list"])
        rows = {row["name"]: row for row in json.loads(result.stdout)}
        assert rows["day_reset"]["next_run"].startswith("invalid")


class TestJobsRun:
    def test_unknown_job(self) -> None:
        result = runner.invoke(app, ["jobs", "run", "nightly"])
        assert result.exit_code == 2
        assert "Unknown job" in result.output

    def test_minute_reset(
        self, patched_runtime: AsyncMock, runtime: MeterRuntime, store: MemoryQuotaStore, seed_user
    ) -> None:
        seed_user("u1", used={"gpt-4": {"minute": 9, "day": 9}})
        asyncio.run(runtime.dirty_sets.add(ACTIVE_MINUTE, "u1"))

        result = runner.invoke(app, ["--json", "jobs", "run", "minute_reset"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["job"] == "minute_reset"
        assert payload["result"] == 1
        assert asyncio.run(store.get("u1"))["used"]["gpt-4"]["minute"] == 0

    def test_billing_flush_report(self, patched_runtime: AsyncMock) -> None:
        result = runner.invoke(app, ["--json", "jobs", "run", "billing_flush"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["result"] == {"users": 0, "units_reported": 0, "skipped": 0, "failed": 0}

    def test_human_output(self, patched_runtime: AsyncMock) -> None:
        result = runner.invoke(app, ["jobs", "run", "run_sweep"])
        assert result.exit_code == 0, result.output
        assert "run_sweep: reconciled=0" in result.output

    def test_failure_exits_1(self, patched_runtime: AsyncMock, runtime: MeterRuntime) -> None:
        with patch.object(runtime.scheduler, "run_job", AsyncMock(side_effect=RuntimeError("boom"))):
            result = runner.invoke(app, ["jobs", "run", "day_reset"])
        assert result.exit_code == 1
        assert "boom" in result.output


# ---------------------------------------------------------------------------
# user
# ---------------------------------------------------------------------------


class TestUser:
    def test_show_json(self, patched_runtime: AsyncMock, seed_user) -> None:
        seed_user("u1", limits={"gpt-4": {"minute": 10, "day": None}})

        result = runner.invoke(app, ["--json", "user", "show", "u1"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["user_id"] == "u1"
        assert payload["record"]["limits"]["gpt-4"]["minute"] == 10

    def test_show_table(self, patched_runtime: AsyncMock, seed_user) -> None:
        seed_user("u1")
        result = runner.invoke(app, ["user", "show", "u1"])
        assert result.exit_code == 0, result.output
        assert "cus_123" in result.output
        assert "gpt-4" in result.output

    def test_show_unknown_user(self, patched_runtime: AsyncMock) -> None:
        result = runner.invoke(app, ["user", "show", "ghost"])
        assert result.exit_code == 1
        assert "No quota record" in result.output

    def test_remaining(self, patched_runtime: AsyncMock, seed_user) -> None:
        seed_user("u1", limits={"gpt-4": {"minute": 10, "day": None}}, used={"gpt-4": {"minute": 4, "day": 4}})
        result = runner.invoke(app, ["--json", "user", "remaining", "u1", "gpt-4"])
        assert json.loads(result.stdout) == {"user_id": "u1", "model": "gpt-4", "remaining": 6}


# ---------------------------------------------------------------------------
# runs
# ---------------------------------------------------------------------------


class TestRuns:
    def test_track(self, patched_runtime: AsyncMock, runtime: MeterRuntime) -> None:
        result = runner.invoke(app, ["--json", "runs", "track", "u1", "thread_1", "run_1", "--provisional-cost", "7"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"key": "u1|thread_1|run_1|7"}
        assert asyncio.run(runtime.dirty_sets.members(PENDING_RUNS)) == ["u1|thread_1|run_1|7"]

    def test_track_rejects_separator(self, patched_runtime: AsyncMock) -> None:
        result = runner.invoke(app, ["runs", "track", "u|1", "thread_1", "run_1"])
        assert result.exit_code == 2

    def test_list(self, patched_runtime: AsyncMock, runtime: MeterRuntime) -> None:
        asyncio.run(runtime.tracker.enqueue("u1", "thread_1", "run_1", 3))
        result = runner.invoke(app, ["--json", "runs", "list"])
        assert json.loads(result.stdout) == [
            {"user_id": "u1", "thread_id": "thread_1", "run_id": "run_1", "provisional_cost": 3}
        ]

    def test_list_empty(self, patched_runtime: AsyncMock) -> None:
        result = runner.invoke(app, ["runs", "list"])
        assert "No pending runs" in result.output


class TestServe:
    def test_serve_starts_uvicorn(self) -> None:
        with patch("uvicorn.run") as run:
            result = runner.invoke(app, ["serve", "--port", "9001"])
        assert result.exit_code == 0, result.output
        run.assert_called_once()
        assert run.call_args.args == ("api.main:app",)
        assert run.call_args.kwargs["port"] == 9001
