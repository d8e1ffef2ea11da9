"""Health-check endpoint.

Registered under the versioned API prefix (``/api/v1/health``).
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from meter_engine.errors import StoreUnavailable

from api import __version__
from api.dependencies import RuntimeDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_HEALTH_KEY = "__health"


@router.get("/health")
async def health(runtime: RuntimeDep) -> dict[str, Any]:
    """Return service health with a quota-store reachability check.

    The endpoint always returns HTTP 200 so that load-balancers see the
    service as alive.  The ``store`` field indicates whether the quota
    store answered a read.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "store": "ok",
        "scheduler": "running" if runtime.scheduler.running else "stopped",
    }
    try:
        await runtime.store.get(_HEALTH_KEY)
    except StoreUnavailable:
        logger.warning("Health check: quota store unreachable", exc_info=True)
        result["store"] = "unavailable"
        result["status"] = "degraded"
    return result
