"""Shared fixtures for CLI tests.

Every command builds its runtime through ``cli.app.create_runtime``; the
fixtures here patch it to return a runtime over an in-memory store so
that no database file or external service is touched.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from meter_engine.config import Settings
from meter_engine.runtime import MeterRuntime, build_runtime
from meter_engine.state.store import MemoryQuotaStore


@pytest.fixture()
def store() -> MemoryQuotaStore:
    return MemoryQuotaStore()


@pytest.fixture()
def runtime(tmp_path, store: MemoryQuotaStore) -> MeterRuntime:
    billing_client = AsyncMock()
    billing_client.list_subscription_items.return_value = []
    return build_runtime(
        Settings(usage_sink_path=tmp_path / "usage.jsonl"),
        store,
        run_client=AsyncMock(),
        billing_client=billing_client,
        usage_sink=AsyncMock(),
    )


@pytest.fixture()
def patched_runtime(runtime: MeterRuntime) -> Iterator[AsyncMock]:
    with patch("cli.app.create_runtime", AsyncMock(return_value=runtime)) as factory:
        yield factory


@pytest.fixture()
def seed_user(store: MemoryQuotaStore) -> Callable[..., None]:
    """Write a raw user record (active, with billing id) into the store."""

    def _seed(user_id: str = "user-1", **fields: Any) -> None:
        data: dict[str, Any] = {"active": True, "billing_id": "cus_123"}
        data.update(fields)
        asyncio.run(store.put(user_id, data))

    return _seed
