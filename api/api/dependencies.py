"""FastAPI dependency injection for settings and the metering runtime."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends
from meter_engine.admission import AdmissionController
from meter_engine.config import load_settings
from meter_engine.jobs.pending_runs import PendingRunTracker
from meter_engine.ledger import UsageLedger
from meter_engine.runtime import MeterRuntime, create_runtime

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Metering runtime
# ---------------------------------------------------------------------------

_runtime: MeterRuntime | None = None


async def init_runtime() -> MeterRuntime:
    """Open the quota store and build the global metering runtime."""
    global _runtime  # noqa: PLW0603
    _runtime = await create_runtime(load_settings())
    return _runtime


async def dispose_runtime() -> None:
    """Stop the scheduler and release connections (call during shutdown)."""
    global _runtime  # noqa: PLW0603
    if _runtime is not None:
        await _runtime.close()
        _runtime = None


def get_runtime() -> MeterRuntime:
    """Return the global metering runtime."""
    if _runtime is None:
        raise RuntimeError(
            "Metering runtime has not been initialised. Ensure init_runtime() is called during application startup."
        )
    return _runtime


RuntimeDep = Annotated[MeterRuntime, Depends(get_runtime)]


def get_ledger(runtime: RuntimeDep) -> UsageLedger:
    return runtime.ledger


def get_admission(runtime: RuntimeDep) -> AdmissionController:
    return runtime.admission


def get_tracker(runtime: RuntimeDep) -> PendingRunTracker:
    return runtime.tracker


LedgerDep = Annotated[UsageLedger, Depends(get_ledger)]
AdmissionDep = Annotated[AdmissionController, Depends(get_admission)]
TrackerDep = Annotated[PendingRunTracker, Depends(get_tracker)]
