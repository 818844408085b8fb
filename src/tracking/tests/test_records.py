"""Tests for record factories, preferences and the in-memory stores."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from src.tracking.errors import ConflictError, NotFoundError
from src.tracking.records import NotificationType, UserPreferences, new_cycle_record
from src.tracking.storage.base import CycleFilter
from src.tracking.storage.memory import InMemoryCycleStore
from src.tracking.tests.conftest import JERUSALEM, NOW, TEST_USER_ID, make_cycle


class TestNewCycleRecord:
    def test_stamps_timestamps_and_version(self) -> None:
        record = new_cycle_record(TEST_USER_ID, NOW, "Asia/Jerusalem", NOW)
        assert record.created_at == record.updated_at == NOW
        assert record.version == 1
        assert record.is_deleted is False

    def test_rejects_naive_period_start(self) -> None:
        with pytest.raises(ValueError, match="timezone-aware"):
            new_cycle_record(TEST_USER_ID, datetime(2026, 3, 1), "Asia/Jerusalem", NOW)

    def test_rejects_unknown_timezone(self) -> None:
        with pytest.raises(ValueError, match="Unknown timezone"):
            new_cycle_record(TEST_USER_ID, NOW, "Mars/Olympus_Mons", NOW)


class TestUserPreferences:
    def test_defaults(self) -> None:
        prefs = UserPreferences()
        assert prefs.minimum_niddah_days == 5
        assert prefs.zone == JERUSALEM

    @pytest.mark.parametrize("days", [3, 11])
    def test_minimum_niddah_days_range(self, days: int) -> None:
        with pytest.raises(ValueError):
            UserPreferences(minimum_niddah_days=days)

    def test_bedika_follows_shiva_toggle(self) -> None:
        prefs = UserPreferences(shiva_nekiyim_reminder=False)
        assert prefs.reminder_enabled(NotificationType.bedika_reminder) is False
        assert prefs.reminder_enabled(NotificationType.mikvah_night) is True


class TestInMemoryCycleStore:
    @pytest.mark.asyncio
    async def test_save_bumps_version(self) -> None:
        store = InMemoryCycleStore()
        record = await store.insert_cycle(make_cycle(NOW))
        saved = await store.save(record, expected_version=1)
        assert saved.version == 2

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self) -> None:
        store = InMemoryCycleStore()
        record = await store.insert_cycle(make_cycle(NOW))
        await store.save(record, expected_version=1)
        with pytest.raises(ConflictError):
            await store.save(record, expected_version=1)

    @pytest.mark.asyncio
    async def test_save_unknown_record(self) -> None:
        with pytest.raises(NotFoundError):
            await InMemoryCycleStore().save(make_cycle(NOW), expected_version=1)

    @pytest.mark.asyncio
    async def test_delete_many_by_filter(self) -> None:
        store = InMemoryCycleStore()
        old = await store.insert_cycle(make_cycle(NOW - timedelta(days=800)))
        await store.insert_cycle(make_cycle(NOW))
        removed = await store.delete_many(
            CycleFilter(is_deleted=False, created_before=NOW - timedelta(days=730))
        )
        assert removed == 1
        assert await store.get_cycle(old.id) is None
