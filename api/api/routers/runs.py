"""Asynchronous run tracking endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from api.dependencies import TrackerDep
from api.schemas import TrackRunRequest, TrackRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


@router.post("/track", response_model=TrackRunResponse, status_code=202)
async def track_run(body: TrackRunRequest, tracker: TrackerDep) -> TrackRunResponse:
    """Track a dispatched run until its final cost can be charged.

    Tracking the same run twice is a no-op.
    """
    key = await tracker.enqueue(body.user_id, body.thread_id, body.run_id, body.provisional_cost)
    return TrackRunResponse(key=key)
