"""Tests for the minute and day window resets."""

from __future__ import annotations

import pytest
from meter_engine.dirty_sets import ACTIVE_DAY, ACTIVE_MINUTE, DirtySetIndex
from meter_engine.jobs.window_reset import WindowResetter, reset_window
from meter_engine.ledger import UsageLedger
from meter_engine.models.catalog import Window
from meter_engine.models.user_record import record_from_stored


@pytest.fixture()
def resetter(ledger: UsageLedger, dirty_sets: DirtySetIndex) -> WindowResetter:
    return WindowResetter(ledger, dirty_sets)


class TestResetWindow:
    def test_zeroes_only_the_given_window(self) -> None:
        record = record_from_stored(
            {
                "used": {"gpt-4": {"minute": 5, "day": 50}},
                "image_used": {"dall-e-3": {"minute": 1, "day": 3}},
            }
        )
        assert reset_window(record, Window.MINUTE) is True
        assert record.used["gpt-4"].minute == 0
        assert record.used["gpt-4"].day == 50
        assert record.image_used["dall-e-3"].minute == 0
        assert record.image_used["dall-e-3"].day == 3

    def test_already_zero(self) -> None:
        assert reset_window(record_from_stored(None), Window.DAY) is False


class TestMinuteReset:
    @pytest.mark.asyncio
    async def test_resets_charged_users(self, resetter: WindowResetter, ledger: UsageLedger, seed_user) -> None:
        await seed_user("u1")
        await ledger.increment("u1", "gpt-4", 40)
        assert await resetter.reset_minute() == 1
        record = await ledger.get("u1")
        assert record.used["gpt-4"].minute == 0
        assert record.used["gpt-4"].day == 40

    @pytest.mark.asyncio
    async def test_keeps_billing_delta_and_dirty_set(
        self, resetter: WindowResetter, ledger: UsageLedger, dirty_sets: DirtySetIndex, seed_user
    ) -> None:
        await seed_user("u1")
        await ledger.increment("u1", "gpt-4", 40)
        await resetter.reset_minute()
        assert (await ledger.get("u1")).usage_since_last_record["gpt-4"] == 40
        assert await dirty_sets.members(ACTIVE_MINUTE) == ["u1"]

    @pytest.mark.asyncio
    async def test_users_outside_the_set_are_untouched(
        self, resetter: WindowResetter, ledger: UsageLedger, seed_user
    ) -> None:
        await seed_user("idle", used={"gpt-4": {"minute": 7, "day": 7}})
        assert await resetter.reset_minute() == 0
        assert (await ledger.get("idle")).used["gpt-4"].minute == 7

    @pytest.mark.asyncio
    async def test_unknown_user_skipped(
        self, resetter: WindowResetter, dirty_sets: DirtySetIndex, store
    ) -> None:
        await dirty_sets.add(ACTIVE_MINUTE, "ghost")
        assert await resetter.reset_minute() == 0
        assert await store.get("ghost") is None


class TestDayReset:
    @pytest.mark.asyncio
    async def test_resets_and_retires_users(
        self, resetter: WindowResetter, ledger: UsageLedger, dirty_sets: DirtySetIndex, seed_user
    ) -> None:
        await seed_user("u1")
        await ledger.increment("u1", "gpt-4-1106-preview", 900)
        assert await resetter.reset_day() == 1
        record = await ledger.get("u1")
        assert record.used["gpt-4-1106-preview"].day == 0
        assert record.used["gpt-4-1106-preview"].minute == 900
        assert await dirty_sets.members(ACTIVE_DAY) == []
        assert await dirty_sets.members(ACTIVE_MINUTE) == ["u1"]

    @pytest.mark.asyncio
    async def test_idempotent(self, resetter: WindowResetter, ledger: UsageLedger, seed_user) -> None:
        await seed_user("u1")
        await ledger.increment("u1", "gpt-4", 10)
        await resetter.reset_day()
        assert await resetter.reset_day() == 0
        assert (await ledger.get("u1")).used["gpt-4"].day == 0
