"""Shared fixtures for meterbridge API tests.

Provides a metering runtime over an in-memory quota store with mocked
external collaborators, and an async httpx client bound to the app.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from meter_engine.config import Settings
from meter_engine.runtime import MeterRuntime, build_runtime
from meter_engine.state.store import MemoryQuotaStore

from api.config import APISettings
from api.dependencies import get_runtime, get_settings
from api.main import create_app

# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(host="0.0.0.0", port=8000, debug=True, scheduler_enabled=False)


# ---------------------------------------------------------------------------
# Metering runtime
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> MemoryQuotaStore:
    return MemoryQuotaStore()


@pytest.fixture()
def mock_run_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
def mock_billing_client() -> AsyncMock:
    client = AsyncMock()
    client.list_subscription_items.return_value = []
    return client


@pytest.fixture()
def runtime(
    tmp_path,
    store: MemoryQuotaStore,
    mock_run_client: AsyncMock,
    mock_billing_client: AsyncMock,
) -> MeterRuntime:
    """Return a runtime whose collaborators never leave the process."""
    return build_runtime(
        Settings(usage_sink_path=tmp_path / "usage.jsonl"),
        store,
        run_client=mock_run_client,
        billing_client=mock_billing_client,
        usage_sink=AsyncMock(),
    )


@pytest.fixture()
def seed_user(store: MemoryQuotaStore):
    """Write a raw user record into the store (active, with billing id)."""

    async def _seed(user_id: str = "user-1", **fields: Any) -> dict[str, Any]:
        data: dict[str, Any] = {"active": True, "billing_id": "cus_123"}
        data.update(fields)
        await store.put(user_id, data)
        return data

    return _seed


# ---------------------------------------------------------------------------
# FastAPI TestClient (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, runtime: MeterRuntime):
    """Create a FastAPI app with dependency overrides for testing.

    The lifespan is not run by ``ASGITransport``, so no real store or
    scheduler is opened.
    """
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_runtime] = lambda: runtime
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app without
    opening a real TCP socket.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
