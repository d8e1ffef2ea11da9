"""Durable state for the metering engine (quota store backends)."""

from meter_engine.state.store import (
    UNCHANGED,
    MemoryQuotaStore,
    QuotaStore,
    SQLQuotaStore,
    compare_and_swap,
)

__all__ = ["UNCHANGED", "MemoryQuotaStore", "QuotaStore", "SQLQuotaStore", "compare_and_swap"]
