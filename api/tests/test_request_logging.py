"""Tests for the access-log middleware."""

from __future__ import annotations

import logging

import pytest
from httpx import AsyncClient


def _access_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == "api.access"]


@pytest.mark.asyncio
async def test_user_id_attached_from_path(client: AsyncClient, seed_user, caplog) -> None:
    await seed_user("u1")
    caplog.set_level(logging.DEBUG, logger="api.access")

    resp = await client.get("/api/v1/usage/u1", headers={"X-Correlation-ID": "req-7"})

    assert resp.status_code == 200
    (record,) = _access_records(caplog)
    assert record.levelno == logging.INFO
    assert record.request["user_id"] == "u1"
    assert record.request["correlation_id"] == "req-7"
    assert record.request["status_code"] == 200


@pytest.mark.asyncio
async def test_quota_denial_logged_at_info(client: AsyncClient, caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="api.access")

    resp = await client.post("/api/v1/usage/admit", json={"user_id": "ghost", "model": "gpt-4"})

    assert resp.status_code == 429
    (record,) = _access_records(caplog)
    assert record.levelno == logging.INFO
    assert "user_id" not in record.request


@pytest.mark.asyncio
async def test_health_check_logged_at_debug(client: AsyncClient, caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="api.access")

    resp = await client.get("/api/v1/health")

    (record,) = _access_records(caplog)
    assert record.levelno == logging.DEBUG
    assert len(resp.headers["X-Correlation-ID"]) == 32


@pytest.mark.asyncio
async def test_validation_error_logged_at_warning(client: AsyncClient, caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="api.access")

    resp = await client.post("/api/v1/usage/increment", json={"user_id": "u1"})

    assert resp.status_code == 422
    (record,) = _access_records(caplog)
    assert record.levelno == logging.WARNING
