"""Tests for the run tracking endpoint."""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from meter_engine.dirty_sets import PENDING_RUNS
from meter_engine.runtime import MeterRuntime


class TestTrackRun:
    @pytest.mark.asyncio
    async def test_track_is_accepted(self, client: AsyncClient, runtime: MeterRuntime) -> None:
        payload = {"user_id": "u1", "thread_id": "thread_1", "run_id": "run_1", "provisional_cost": 42}

        resp = await client.post("/api/v1/runs/track", json=payload)

        assert resp.status_code == 202
        assert resp.json() == {"key": "u1|thread_1|run_1|42"}
        assert await runtime.dirty_sets.members(PENDING_RUNS) == ["u1|thread_1|run_1|42"]

    @pytest.mark.asyncio
    async def test_track_twice_is_idempotent(self, client: AsyncClient, runtime: MeterRuntime) -> None:
        payload = {"user_id": "u1", "thread_id": "thread_1", "run_id": "run_1"}
        await client.post("/api/v1/runs/track", json=payload)
        await client.post("/api/v1/runs/track", json=payload)
        assert len(await runtime.tracker.pending()) == 1

    @pytest.mark.asyncio
    async def test_separator_in_identifier_rejected(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/runs/track", json={"user_id": "u|1", "thread_id": "t", "run_id": "r"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_fields(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/runs/track", json={"user_id": "u1"})
        assert resp.status_code == 422
