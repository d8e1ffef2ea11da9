"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that request bodies and endpoint responses are
validated and documented in the OpenAPI schema.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Usage schemas
# ---------------------------------------------------------------------------


class AdmitRequest(BaseModel):
    """Admission check for a text resource, pre-charging the declared cost."""

    user_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    declared_cost: int = Field(default=0, ge=0)


class AdmitImageRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    count: int = Field(default=1, ge=1)
    resolution: str | None = None


class ChargeRequest(BaseModel):
    """A charge (or release) of *amount* units of *model* usage."""

    user_id: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    amount: int


class AdmissionResponse(BaseModel):
    allowed: bool
    remaining: int | None = None
    reason: str | None = None


class WindowUsageResponse(BaseModel):
    minute: int = 0
    day: int = 0


class ChargeResponse(BaseModel):
    """Counters for the charged resource after the charge."""

    user_id: str
    model: str
    used: WindowUsageResponse
    remaining: int | None = None


class ReleaseResponse(BaseModel):
    released: bool


class RemainingResponse(BaseModel):
    user_id: str
    model: str
    remaining: int | None = None


class UserRecordResponse(BaseModel):
    """The stored quota record of a user, merged over defaults."""

    user_id: str
    record: dict[str, Any]


# ---------------------------------------------------------------------------
# Run schemas
# ---------------------------------------------------------------------------


class TrackRunRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    thread_id: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    provisional_cost: int = Field(default=0, ge=0)


class TrackRunResponse(BaseModel):
    key: str
