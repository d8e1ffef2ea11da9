"""Tests for the usage metering endpoints."""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from meter_engine.admission import AdmissionController
from meter_engine.errors import StoreUnavailable
from meter_engine.runtime import MeterRuntime

TEN_PER_MINUTE = {"gpt-4": {"minute": 10, "day": None}}


class TestAdmit:
    @pytest.mark.asyncio
    async def test_allowed_and_precharged(self, client: AsyncClient, runtime: MeterRuntime, seed_user) -> None:
        await seed_user("u1", limits=TEN_PER_MINUTE)

        resp = await client.post("/api/v1/usage/admit", json={"user_id": "u1", "model": "gpt-4", "declared_cost": 3})

        assert resp.status_code == 200
        assert resp.json() == {"allowed": True, "remaining": 7, "reason": None}
        assert (await runtime.ledger.get("u1")).used["gpt-4"].minute == 3

    @pytest.mark.asyncio
    async def test_denied_returns_429(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1", limits=TEN_PER_MINUTE, used={"gpt-4": {"minute": 8, "day": 8}})

        resp = await client.post("/api/v1/usage/admit", json={"user_id": "u1", "model": "gpt-4", "declared_cost": 5})

        assert resp.status_code == 429
        body = resp.json()
        assert body["reason"] == "insufficient_capacity"
        assert body["remaining"] == 2

    @pytest.mark.asyncio
    async def test_unknown_user(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/usage/admit", json={"user_id": "ghost", "model": "gpt-4"})
        assert resp.status_code == 429
        assert resp.json()["reason"] == "unknown_user"

    @pytest.mark.asyncio
    async def test_negative_declared_cost_rejected(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/usage/admit", json={"user_id": "u1", "model": "gpt-4", "declared_cost": -1})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_store_outage_returns_503(self, client: AsyncClient, runtime: MeterRuntime, monkeypatch) -> None:
        async def _down(*args, **kwargs):
            raise StoreUnavailable("connection refused")

        monkeypatch.setattr(AdmissionController, "admit", _down)
        resp = await client.post("/api/v1/usage/admit", json={"user_id": "u1", "model": "gpt-4"})
        assert resp.status_code == 503


class TestAdmitImage:
    @pytest.mark.asyncio
    async def test_allowed(self, client: AsyncClient, runtime: MeterRuntime, seed_user) -> None:
        await seed_user("u1", image_limits={"dall-e-3": {"minute": 2, "day": 10}})

        resp = await client.post(
            "/api/v1/usage/admit-image",
            json={"user_id": "u1", "model": "dall-e-3", "count": 2, "resolution": "1792x1024"},
        )

        assert resp.status_code == 200
        assert resp.json()["remaining"] == 0
        assert (await runtime.ledger.get("u1")).image_used["dall-e-3"].day == 2

    @pytest.mark.asyncio
    async def test_blocked_by_default(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1")
        resp = await client.post("/api/v1/usage/admit-image", json={"user_id": "u1", "model": "dall-e-2"})
        assert resp.status_code == 429
        assert resp.json()["reason"] == "window_exhausted"

    @pytest.mark.asyncio
    async def test_bad_resolution_returns_400(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1")
        resp = await client.post(
            "/api/v1/usage/admit-image",
            json={"user_id": "u1", "model": "dall-e-3", "resolution": "10x10"},
        )
        assert resp.status_code == 400
        assert "resolution" in resp.json()["detail"]


class TestIncrement:
    @pytest.mark.asyncio
    async def test_charges_counters(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1", limits=TEN_PER_MINUTE, used={"gpt-4": {"minute": 8, "day": 8}})

        resp = await client.post("/api/v1/usage/increment", json={"user_id": "u1", "model": "gpt-4", "amount": 2})

        assert resp.status_code == 200
        body = resp.json()
        assert body["used"] == {"minute": 10, "day": 10}
        assert body["remaining"] == 0

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1")
        resp = await client.post("/api/v1/usage/increment", json={"user_id": "u1", "model": "gpt-4", "amount": -5})
        assert resp.status_code == 400


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_disabled_by_default(self, client: AsyncClient, runtime: MeterRuntime, seed_user) -> None:
        await seed_user("u1")
        await runtime.ledger.increment("u1", "gpt-4", 50)

        resp = await client.post("/api/v1/usage/release", json={"user_id": "u1", "model": "gpt-4", "amount": 50})

        assert resp.status_code == 200
        assert resp.json() == {"released": False}
        assert (await runtime.ledger.get("u1")).used["gpt-4"].minute == 50


class TestRead:
    @pytest.mark.asyncio
    async def test_user_record(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1", limits=TEN_PER_MINUTE)

        resp = await client.get("/api/v1/usage/u1")

        assert resp.status_code == 200
        record = resp.json()["record"]
        assert record["limits"]["gpt-4"] == {"minute": 10, "day": None}
        # Catalog defaults are merged in for resources the record lacks.
        assert record["image_limits"]["dall-e-3"] == {"minute": 0, "day": 0}

    @pytest.mark.asyncio
    async def test_remaining(self, client: AsyncClient, seed_user) -> None:
        await seed_user("u1", limits={"gpt-4": {"minute": None, "day": None}})
        resp = await client.get("/api/v1/usage/u1/remaining/gpt-4")
        assert resp.json() == {"user_id": "u1", "model": "gpt-4", "remaining": None}

    @pytest.mark.asyncio
    async def test_unknown_user_404(self, client: AsyncClient) -> None:
        assert (await client.get("/api/v1/usage/ghost")).status_code == 404
        assert (await client.get("/api/v1/usage/ghost/remaining/gpt-4")).status_code == 404
