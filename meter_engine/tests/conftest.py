"""Shared fixtures for metering engine tests.

Provides an in-memory quota store, the ledger built on top of it and a
factory for seeding user records.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from meter_engine.dirty_sets import DirtySetIndex
from meter_engine.ledger import UsageLedger
from meter_engine.state.store import MemoryQuotaStore

SeedUser = Callable[..., Awaitable[dict[str, Any]]]


@pytest.fixture()
def store() -> MemoryQuotaStore:
    return MemoryQuotaStore()


@pytest.fixture()
def dirty_sets(store: MemoryQuotaStore) -> DirtySetIndex:
    return DirtySetIndex(store)


@pytest.fixture()
def ledger(store: MemoryQuotaStore, dirty_sets: DirtySetIndex) -> UsageLedger:
    return UsageLedger(store, dirty_sets)


@pytest.fixture()
def seed_user(store: MemoryQuotaStore) -> SeedUser:
    """Write a raw user record straight into the store.

    Defaults to an active user with a billing identity; keyword arguments
    override or extend the stored JSON.
    """

    async def _seed(user_id: str = "user-1", **fields: Any) -> dict[str, Any]:
        data: dict[str, Any] = {"active": True, "billing_id": "cus_123"}
        data.update(fields)
        await store.put(user_id, data)
        return data

    return _seed
