"""Tests for runtime assembly."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from meter_engine.config import Settings
from meter_engine.runtime import JOB_NAMES, build_runtime, create_runtime, job_crons
from meter_engine.state.store import MemoryQuotaStore, SQLQuotaStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        usage_sink_path=tmp_path / "usage.jsonl",
        run_sweep_cron="*/10 * * * *",
    )


class TestJobCrons:
    def test_execution_order(self, settings: Settings) -> None:
        crons = job_crons(settings)
        assert tuple(crons) == JOB_NAMES
        assert crons["run_sweep"] == "*/10 * * * *"


class TestBuildRuntime:
    def test_scheduler_registers_jobs_in_order(self, settings: Settings) -> None:
        runtime = build_runtime(settings, MemoryQuotaStore(), run_client=AsyncMock(), billing_client=AsyncMock())
        assert [job.name for job in runtime.scheduler.jobs] == list(JOB_NAMES)

    @pytest.mark.asyncio
    async def test_components_share_the_store(self, settings: Settings) -> None:
        store = MemoryQuotaStore()
        sink = AsyncMock()
        runtime = build_runtime(settings, store, run_client=AsyncMock(), billing_client=AsyncMock(), usage_sink=sink)
        await store.put("u1", {"active": True, "billing_id": "cus_1"})

        decision = await runtime.admission.admit("u1", "gpt-4", 10)

        assert decision.allowed
        assert (await runtime.ledger.get("u1")).used["gpt-4"].minute == 10
        await runtime.close()

    @pytest.mark.asyncio
    async def test_run_job_through_scheduler(self, settings: Settings) -> None:
        store = MemoryQuotaStore()
        runtime = build_runtime(settings, store, run_client=AsyncMock(), billing_client=AsyncMock())
        await store.put("u1", {"active": True, "billing_id": "cus_1"})
        await runtime.ledger.increment("u1", "gpt-4", 5)

        assert await runtime.scheduler.run_job("minute_reset") == 1
        assert (await runtime.ledger.get("u1")).used["gpt-4"].minute == 0
        await runtime.close()


class TestCreateRuntime:
    @pytest.mark.asyncio
    async def test_local_sqlite_store(self, settings: Settings) -> None:
        runtime = await create_runtime(settings, run_client=AsyncMock(), billing_client=AsyncMock())
        try:
            assert isinstance(runtime.store, SQLQuotaStore)
            await runtime.store.put("roundtrip", {"ok": True})
            assert await runtime.store.get("roundtrip") == {"ok": True}
        finally:
            await runtime.close()
        assert runtime.engine is None
