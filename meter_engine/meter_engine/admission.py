"""Pre-execution admission control for metered operations.

Admission is two-phase.  The cost known up front (prompt length, number of
images) is pre-charged while the decision is taken; the remainder (generated
output) is charged with :meth:`UsageLedger.increment` once known.  Charging
the known floor immediately stops a user from starting many concurrent
operations that all pass admission before any charge lands.

The check and the pre-charge run inside one compare-and-swap cycle on the
user record, so they cannot interleave with another request's charge.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from meter_engine.errors import QuotaExceeded
from meter_engine.ledger import UsageLedger, apply_increment, remaining, resource_kind
from meter_engine.models.catalog import WINDOWS, ResourceKind, get_resource
from meter_engine.models.user_record import UserRecord

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    UNKNOWN_USER = "unknown_user"
    INACTIVE = "inactive"
    NO_BILLING_IDENTITY = "no_billing_identity"
    NO_LIMIT = "no_limit"
    WINDOW_EXHAUSTED = "window_exhausted"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"


class AdmissionDecision(BaseModel):
    """Outcome of an admission check.

    ``remaining_capacity`` is measured after any pre-charge and is ``None``
    when the resource is unbounded.
    """

    allowed: bool
    remaining_capacity: int | None = 0
    reason: DenialReason | None = None


def evaluate(
    record: UserRecord,
    model: str,
    provisional_amount: int = 0,
    *,
    reject_over_remaining: bool = True,
) -> AdmissionDecision:
    """Decide admission for *model* against an in-memory record.

    The window check compares current usage with ``>=`` and ignores
    *provisional_amount*.  With *reject_over_remaining* a declared cost
    larger than the capacity left is denied as well.
    """
    if not record.active:
        return AdmissionDecision(allowed=False, reason=DenialReason.INACTIVE)
    if not record.billing_id:
        return AdmissionDecision(allowed=False, reason=DenialReason.NO_BILLING_IDENTITY)

    kind = resource_kind(record, model)
    limit = record.limits_for(kind).get(model)
    if limit is None:
        return AdmissionDecision(allowed=False, reason=DenialReason.NO_LIMIT)

    used = record.used_for(kind)[model]
    for window in WINDOWS:
        window_limit = limit.get(window)
        if window_limit is not None and used.get(window) >= window_limit:
            return AdmissionDecision(allowed=False, reason=DenialReason.WINDOW_EXHAUSTED)

    capacity = remaining(record, model)
    if reject_over_remaining and capacity is not None and provisional_amount > capacity:
        return AdmissionDecision(
            allowed=False,
            remaining_capacity=capacity,
            reason=DenialReason.INSUFFICIENT_CAPACITY,
        )
    return AdmissionDecision(allowed=True, remaining_capacity=capacity)


class AdmissionController:
    """Allow/deny decisions for metered operations, with pre-charging.

    Parameters
    ----------
    ledger:
        The usage ledger backing quota checks and charges.
    reject_over_remaining:
        Deny requests whose declared cost alone exceeds the capacity left.
    revert_precharge_on_failure:
        Whether :meth:`release` hands a pre-charge back after the
        operation failed.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        *,
        reject_over_remaining: bool = True,
        revert_precharge_on_failure: bool = False,
    ) -> None:
        self._ledger = ledger
        self._reject_over_remaining = reject_over_remaining
        self._revert_precharge_on_failure = revert_precharge_on_failure

    async def admit(self, user_id: str, model: str, provisional_amount: int = 0) -> AdmissionDecision:
        """Check quota for *model* and pre-charge *provisional_amount* if allowed."""
        if provisional_amount < 0:
            raise ValueError("provisional_amount must be >= 0")

        decision = AdmissionDecision(allowed=False, reason=DenialReason.UNKNOWN_USER)

        def _decide(record: UserRecord) -> bool:
            nonlocal decision
            decision = evaluate(
                record,
                model,
                provisional_amount,
                reject_over_remaining=self._reject_over_remaining,
            )
            if not decision.allowed or provisional_amount == 0:
                return False
            apply_increment(record, model, provisional_amount)
            decision = AdmissionDecision(allowed=True, remaining_capacity=remaining(record, model))
            return True

        await self._ledger.update(user_id, _decide, create=False)

        if decision.allowed and provisional_amount > 0:
            await self._ledger.mark_active(user_id)
        elif not decision.allowed:
            logger.info(
                "Admission denied user=%s model=%s declared=%d reason=%s",
                user_id,
                model,
                provisional_amount,
                decision.reason.value if decision.reason else "",
            )
        return decision

    async def enforce(self, user_id: str, model: str, provisional_amount: int = 0) -> AdmissionDecision:
        """Like :meth:`admit` but raise :class:`QuotaExceeded` on denial."""
        decision = await self.admit(user_id, model, provisional_amount)
        if not decision.allowed:
            reason = decision.reason.value if decision.reason else "denied"
            raise QuotaExceeded(user_id, model, decision.remaining_capacity, reason)
        return decision

    async def admit_image(
        self,
        user_id: str,
        model: str,
        count: int = 1,
        resolution: str | None = None,
    ) -> AdmissionDecision:
        """Admit *count* image generations, pre-charging one point per image."""
        resource = get_resource(model)
        if resource is None or resource.kind != ResourceKind.IMAGE:
            raise ValueError(f"{model!r} is not an image model")
        if resolution is not None and resolution not in resource.resolutions:
            raise ValueError(f"Unsupported resolution {resolution!r} for {model!r}")
        if count < 1:
            raise ValueError("count must be >= 1")
        return await self.admit(user_id, model, count)

    async def release(self, user_id: str, model: str, amount: int) -> bool:
        """Hand back a pre-charge after the admitted operation failed.

        Returns ``True`` if the charge was reverted; a no-op unless
        ``revert_precharge_on_failure`` is enabled.
        """
        if amount <= 0:
            return False
        if not self._revert_precharge_on_failure:
            logger.info(
                "Pre-charge kept after failure user=%s model=%s amount=%d",
                user_id,
                model,
                amount,
            )
            return False
        await self._ledger.increment(user_id, model, -amount)
        return True
