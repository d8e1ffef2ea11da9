"""Billing flush: converts accumulated usage deltas into billed units.

Each user's ``usage_since_last_record`` grows with every charge.  The flush
reports whole billing units (``delta // billing_unit``) to the billing
provider and keeps the remainder, so over any number of flushes
``reported * billing_unit + remainder`` equals everything charged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from meter_engine.clients.billing import BillingClient, SubscriptionItem
from meter_engine.dirty_sets import ACTIVE_MINUTE, DirtySetIndex
from meter_engine.errors import ReconciliationSkipped, StoreUnavailable
from meter_engine.ledger import UsageLedger
from meter_engine.models.catalog import ResourceKind
from meter_engine.models.user_record import UserRecord

logger = logging.getLogger(__name__)


@dataclass
class FlushReport:
    """Outcome counts of one billing flush."""

    users: int = 0
    units_reported: int = 0
    skipped: int = 0
    failed: int = 0


def find_item(items: Iterable[SubscriptionItem], model: str) -> SubscriptionItem | None:
    """Return the first subscription item whose lookup keys cover *model*."""
    for item in items:
        if item.covers(model):
            return item
    return None


class BillingReconciler:
    """Reports billable usage for every user active since the last flush.

    Parameters
    ----------
    ledger:
        Ledger owning the usage deltas.
    dirty_sets:
        Index holding the active-user set.
    billing_client:
        Billing provider collaborator.
    billing_unit:
        Characters (or images) per billed unit.
    exempt_billing_ids:
        Billing identities that are never reported.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        dirty_sets: DirtySetIndex,
        billing_client: BillingClient,
        *,
        billing_unit: int = 1000,
        exempt_billing_ids: Iterable[str] = ("DONT_CHARGE_ME",),
    ) -> None:
        self._ledger = ledger
        self._dirty_sets = dirty_sets
        self._billing_client = billing_client
        self._billing_unit = billing_unit
        self._exempt = frozenset(exempt_billing_ids)

    async def flush(self) -> FlushReport:
        """Report whole units for every active user.

        Users are retired from the active set only when their flush
        succeeded and no minute counter is still pending a reset.  Users
        added while the flush runs are never removed.
        """
        users = await self._dirty_sets.members(ACTIVE_MINUTE)
        report = FlushReport()
        done: list[str] = []

        for user_id in users:
            try:
                record = await self._flush_user(user_id, report)
            except StoreUnavailable:
                raise
            except Exception:
                report.failed += 1
                logger.error(
                    "Billing flush failed for user=%s",
                    user_id,
                    exc_info=True,
                    extra={"job": "billing_flush", "user_id": user_id},
                )
                continue
            report.users += 1
            if record is None or not record.has_minute_usage():
                done.append(user_id)

        await self._dirty_sets.discard(ACTIVE_MINUTE, done)
        logger.info(
            "Billing flush: users=%d units=%d skipped=%d failed=%d",
            report.users,
            report.units_reported,
            report.skipped,
            report.failed,
        )
        return report

    async def _flush_user(self, user_id: str, report: FlushReport) -> UserRecord | None:
        record = await self._ledger.get(user_id)
        if record is None:
            return None
        if not record.billing_id or record.billing_id in self._exempt:
            return record

        billable = self._billable(record)
        if not billable:
            return record

        items = await self._billing_client.list_subscription_items(record.billing_id)
        reported = False
        for kind, model, quantity in billable:
            try:
                item = self._item_for(items, user_id, model)
            except ReconciliationSkipped as exc:
                report.skipped += 1
                logger.debug("%s", exc, extra={"job": "billing_flush", "user_id": user_id, "model": model})
                continue
            await self._billing_client.report_usage(item.id, quantity)
            report.units_reported += quantity
            reported = True
            # Persisted per item: a later failure must not bill these units twice.
            await self._commit(user_id, kind, model, quantity)

        return await self._ledger.get(user_id) if reported else record

    @staticmethod
    def _item_for(items: list[SubscriptionItem], user_id: str, model: str) -> SubscriptionItem:
        item = find_item(items, model)
        if item is None:
            raise ReconciliationSkipped(user_id, model)
        return item

    def _billable(self, record: UserRecord) -> list[tuple[ResourceKind, str, int]]:
        billable = []
        for kind in ResourceKind:
            for model, delta in record.deltas_for(kind).items():
                if delta >= self._billing_unit:
                    billable.append((kind, model, delta // self._billing_unit))
        return billable

    async def _commit(self, user_id: str, kind: ResourceKind, model: str, quantity: int) -> None:
        """Subtract the reported units from the stored delta.

        Subtracting rather than overwriting keeps charges that landed since
        the record was read.
        """
        spent = quantity * self._billing_unit

        def _subtract(record: UserRecord) -> bool:
            deltas = record.deltas_for(kind)
            deltas[model] = max(0, deltas.get(model, 0) - spent)
            return True

        await self._ledger.update(user_id, _subtract, create=False)
