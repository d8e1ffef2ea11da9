"""Minute and day window resets.

Both resets walk a dirty set instead of the whole user population.  The
minute reset leaves ``__usage`` alone because the billing flush still
needs it; the day reset removes exactly the users it processed from
``__usage_daily``.
"""

from __future__ import annotations

import logging

from meter_engine.dirty_sets import ACTIVE_DAY, ACTIVE_MINUTE, DirtySetIndex
from meter_engine.ledger import UsageLedger
from meter_engine.models.catalog import Window
from meter_engine.models.user_record import UserRecord

logger = logging.getLogger(__name__)


def reset_window(record: UserRecord, window: Window) -> bool:
    """Zero *window* for every text and image resource.  ``False`` if already zero."""
    changed = False
    for counters in (record.used, record.image_used):
        for usage in counters.values():
            if usage.get(window):
                usage.reset(window)
                changed = True
    return changed


class WindowResetter:
    """Zeroes window counters for the users recorded in the dirty sets.

    Parameters
    ----------
    ledger:
        Ledger used to rewrite user records.
    dirty_sets:
        Index holding the active-user sets.
    """

    def __init__(self, ledger: UsageLedger, dirty_sets: DirtySetIndex) -> None:
        self._ledger = ledger
        self._dirty_sets = dirty_sets

    async def reset_minute(self) -> int:
        """Reset minute counters.  Returns the number of records rewritten."""
        users = await self._dirty_sets.members(ACTIVE_MINUTE)
        return await self._reset(users, Window.MINUTE)

    async def reset_day(self) -> int:
        """Reset day counters and retire the processed users from the day set."""
        users = await self._dirty_sets.members(ACTIVE_DAY)
        reset = await self._reset(users, Window.DAY)
        await self._dirty_sets.discard(ACTIVE_DAY, users)
        return reset

    async def _reset(self, users: list[str], window: Window) -> int:
        reset = 0
        for user_id in users:
            changed = False

            def _zero(record: UserRecord) -> bool:
                nonlocal changed
                changed = reset_window(record, window)
                return changed

            record = await self._ledger.update(user_id, _zero, create=False)
            if record is None:
                logger.debug("Skipping %s reset for unknown user=%s", window.value, user_id)
                continue
            if changed:
                reset += 1
        logger.info("Reset %s window for %d of %d active users", window.value, reset, len(users))
        return reset
