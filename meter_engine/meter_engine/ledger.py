"""Usage ledger: capacity computation and the single counter-mutation path.

The ledger never keeps a ``UserRecord`` between calls.  Every mutation
re-reads the stored record and writes it back with compare-and-swap, so a
concurrent increment for the same user is retried rather than lost.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, cast

from meter_engine.dirty_sets import ACTIVE_DAY, ACTIVE_MINUTE, DirtySetIndex
from meter_engine.models.catalog import WINDOWS, ResourceKind, get_resource
from meter_engine.models.user_record import UserRecord, record_from_stored, record_to_stored
from meter_engine.state.store import UNCHANGED, QuotaStore, compare_and_swap

logger = logging.getLogger(__name__)


def resource_kind(record: UserRecord, model: str) -> ResourceKind:
    """Resolve whether *model* is metered in the text or the image tables."""
    resource = get_resource(model)
    if resource is not None:
        return resource.kind
    if model in record.image_limits:
        return ResourceKind.IMAGE
    return ResourceKind.TEXT


def remaining(record: UserRecord, model: str) -> int | None:
    """Return the capacity left for *model*, or ``None`` when unbounded.

    A window limited to ``0`` blocks the resource outright.  Otherwise the
    result is the smallest ``max(0, limit - used)`` across the windows that
    have a limit.  Users who are inactive or have no billing identity, and
    resources without a limit object, have no capacity at all.
    """
    if not record.active or not record.billing_id:
        return 0
    kind = resource_kind(record, model)
    limit = record.limits_for(kind).get(model)
    if limit is None:
        return 0
    used = record.used_for(kind)[model]

    capacity: int | None = None
    for window in WINDOWS:
        window_limit = limit.get(window)
        if window_limit == 0:
            return 0
        if window_limit is None:
            continue
        left = max(0, window_limit - used.get(window))
        capacity = left if capacity is None else min(capacity, left)
    return capacity


def apply_increment(record: UserRecord, model: str, amount: int) -> bool:
    """Add *amount* to every window and to the billing delta of *model*.

    Negative amounts release earlier charges; counters never drop below
    zero.  Returns ``False`` when nothing changed.
    """
    if amount == 0:
        return False
    kind = resource_kind(record, model)
    used = record.used_for(kind).get(model)
    if used is None:
        logger.warning("No usage counters for model=%s; increment of %d ignored", model, amount)
        return False
    for window in WINDOWS:
        used.add(window, amount)
    deltas = record.deltas_for(kind)
    deltas[model] = max(0, deltas.get(model, 0) + amount)
    return True


class UsageLedger:
    """Loads, mutates and persists user quota records.

    Parameters
    ----------
    store:
        Quota store owning the durable records.
    dirty_sets:
        Index notified whenever a user's counters change.
    max_attempts:
        Compare-and-swap attempts per mutation.
    """

    def __init__(self, store: QuotaStore, dirty_sets: DirtySetIndex, max_attempts: int = 5) -> None:
        self._store = store
        self._dirty_sets = dirty_sets
        self._max_attempts = max_attempts

    async def get(self, user_id: str) -> UserRecord | None:
        """Return the stored record merged over defaults, or ``None`` if absent."""
        stored = await self._store.get(user_id)
        if stored is None:
            return None
        return record_from_stored(stored)

    async def load(self, user_id: str) -> UserRecord:
        """Return the stored record, or a default record if none exists."""
        return record_from_stored(await self._store.get(user_id))

    async def save(self, user_id: str, record: UserRecord) -> None:
        await self._store.put(user_id, record_to_stored(record))

    async def update(
        self,
        user_id: str,
        mutate: Callable[[UserRecord], bool],
        *,
        create: bool = True,
    ) -> UserRecord | None:
        """Apply *mutate* to a fresh copy of the record and write it back.

        *mutate* returns ``False`` to skip the write.  With ``create=False``
        a missing record is left missing and ``None`` is returned.
        """
        result: dict[str, UserRecord] = {}

        def _apply(current: Any | None) -> Any:
            if current is None and not create:
                return UNCHANGED
            record = record_from_stored(current)
            result["record"] = record
            if not mutate(record):
                return UNCHANGED
            return record_to_stored(record)

        await compare_and_swap(self._store, user_id, _apply, max_attempts=self._max_attempts)
        return result.get("record")

    async def increment(self, user_id: str, model: str, amount: int) -> UserRecord:
        """Charge *amount* of *model* usage to *user_id*.

        No-op when ``amount == 0``.  Otherwise the user is marked dirty in
        both the minute and the day set before the charge lands, and again
        once it has landed: a billing flush or day reset running in between
        may retire the user on the strength of the uncharged record.
        """
        if amount == 0:
            return await self.load(user_id)

        await self.mark_active(user_id)
        changed = False

        def _charge(record: UserRecord) -> bool:
            nonlocal changed
            changed = apply_increment(record, model, amount)
            return changed

        record = await self.update(user_id, _charge)
        if changed:
            await self.mark_active(user_id)
            logger.debug("Charged user=%s model=%s amount=%d", user_id, model, amount)
        return cast(UserRecord, record)

    async def mark_active(self, user_id: str) -> None:
        """Register *user_id* with the minute and day window resets."""
        await self._dirty_sets.add(ACTIVE_MINUTE, user_id)
        await self._dirty_sets.add(ACTIVE_DAY, user_id)
