"""Usage metering API endpoints.

Admission checks with pre-charging, post-hoc charging, pre-charge
release and read access to quota records.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from meter_engine.errors import QuotaExceeded
from meter_engine.ledger import remaining, resource_kind

from api.dependencies import AdmissionDep, LedgerDep
from api.schemas import (
    AdmissionResponse,
    AdmitImageRequest,
    AdmitRequest,
    ChargeRequest,
    ChargeResponse,
    ReleaseResponse,
    RemainingResponse,
    UserRecordResponse,
    WindowUsageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.post("/admit", response_model=AdmissionResponse)
async def admit(body: AdmitRequest, admission: AdmissionDep) -> AdmissionResponse:
    """Admit a text operation, pre-charging ``declared_cost``.

    Denials are returned as HTTP 429.
    """
    decision = await admission.enforce(body.user_id, body.model, body.declared_cost)
    return AdmissionResponse(allowed=True, remaining=decision.remaining_capacity)


@router.post("/admit-image", response_model=AdmissionResponse)
async def admit_image(body: AdmitImageRequest, admission: AdmissionDep) -> AdmissionResponse:
    """Admit ``count`` image generations.  Denials are returned as HTTP 429."""
    decision = await admission.admit_image(body.user_id, body.model, body.count, body.resolution)
    if not decision.allowed:
        reason = decision.reason.value if decision.reason else "denied"
        raise QuotaExceeded(body.user_id, body.model, decision.remaining_capacity, reason)
    return AdmissionResponse(allowed=True, remaining=decision.remaining_capacity)


@router.post("/increment", response_model=ChargeResponse)
async def increment(body: ChargeRequest, ledger: LedgerDep) -> ChargeResponse:
    """Charge the actual cost of a finished operation."""
    if body.amount < 0:
        raise ValueError("amount must be >= 0; use /usage/release to revert a pre-charge")
    record = await ledger.increment(body.user_id, body.model, body.amount)
    used = record.used_for(resource_kind(record, body.model)).get(body.model)
    return ChargeResponse(
        user_id=body.user_id,
        model=body.model,
        used=WindowUsageResponse(**used.model_dump()) if used is not None else WindowUsageResponse(),
        remaining=remaining(record, body.model),
    )


@router.post("/release", response_model=ReleaseResponse)
async def release(body: ChargeRequest, admission: AdmissionDep) -> ReleaseResponse:
    """Revert a pre-charge after the admitted operation failed."""
    released = await admission.release(body.user_id, body.model, body.amount)
    return ReleaseResponse(released=released)


@router.get("/{user_id}", response_model=UserRecordResponse)
async def get_user_record(user_id: str, ledger: LedgerDep) -> UserRecordResponse:
    record = await ledger.get(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown user {user_id}")
    return UserRecordResponse(user_id=user_id, record=record.model_dump(mode="json"))


@router.get("/{user_id}/remaining/{model}", response_model=RemainingResponse)
async def get_remaining(user_id: str, model: str, ledger: LedgerDep) -> RemainingResponse:
    """Return the capacity left for *model*; ``null`` means unbounded."""
    record = await ledger.get(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown user {user_id}")
    return RemainingResponse(user_id=user_id, model=model, remaining=remaining(record, model))
