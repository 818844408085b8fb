"""Tests for the cycle service: orchestration and optimistic concurrency."""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from src.tracking.errors import (
    ConflictError,
    InvalidSequenceError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from src.tracking.notifications import NotificationScheduler
from src.tracking.records import (
    ActivityAction,
    CycleEventType,
    CycleStatus,
    NotificationStatus,
    NotificationType,
)
from src.tracking.service import CycleService
from src.tracking.storage.memory import (
    InMemoryActivityLog,
    InMemoryCycleStore,
    InMemoryNotificationStore,
    InMemoryProfileReader,
)
from src.tracking.tests.conftest import (
    JERUSALEM,
    NOW,
    OTHER_USER_ID,
    TEST_USER_ID,
    FakeDelivery,
    FixedClock,
)

START = datetime(2026, 3, 1, 10, 0, tzinfo=JERUSALEM)


class InterleavingCycleStore(InMemoryCycleStore):
    """Yields to the event loop after every read so concurrent writers interleave."""

    async def get_cycle(self, cycle_id):
        record = await super().get_cycle(cycle_id)
        await asyncio.sleep(0)
        return record


class AlwaysConflictingStore(InMemoryCycleStore):
    def __init__(self) -> None:
        super().__init__()
        self.save_calls = 0

    async def save(self, record, expected_version):
        self.save_calls += 1
        raise ConflictError(f"Cycle {record.id} was modified concurrently")


def _service_with(store, notification_store, activity_log, profiles, scheduler, clock, cfg):
    return CycleService(store, notification_store, activity_log, profiles, scheduler, clock, cfg)


def _pending_types(store: InMemoryNotificationStore, cycle_id) -> list[NotificationType]:
    return [
        n.type for n in store.all()
        if n.cycle_id == cycle_id and n.status is NotificationStatus.pending
    ]


# ---------------------------------------------------------------------------
# create / read / delete
# ---------------------------------------------------------------------------


class TestCreateCycle:
    @pytest.mark.asyncio
    async def test_create_uses_profile_timezone(self, service: CycleService) -> None:
        record = await service.create_cycle(OTHER_USER_ID, START)
        assert record.timezone == "America/New_York"
        assert record.status is CycleStatus.niddah
        assert record.version == 1
        assert record.created_at == NOW

    @pytest.mark.asyncio
    async def test_create_logs_activity_and_schedules_reminders(
        self,
        service: CycleService,
        activity_log: InMemoryActivityLog,
        notification_store: InMemoryNotificationStore,
    ) -> None:
        record = await service.create_cycle(TEST_USER_ID, START, notes="light")

        entries = await activity_log.list_for_user(TEST_USER_ID)
        assert [e.action for e in entries] == [ActivityAction.cycle_created]
        assert entries[0].entity_id == record.id

        types = {n.type for n in notification_store.all()}
        assert NotificationType.hefsek_tahara in types
        assert NotificationType.vest_onah in types

    @pytest.mark.asyncio
    async def test_naive_period_start_rejected(self, service: CycleService) -> None:
        with pytest.raises(ValidationError):
            await service.create_cycle(TEST_USER_ID, datetime(2026, 3, 1, 10, 0))

    @pytest.mark.asyncio
    async def test_overlong_notes_rejected(self, service: CycleService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create_cycle(TEST_USER_ID, START, notes="x" * 501)
        assert "500" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_unknown_user(self, service: CycleService) -> None:
        with pytest.raises(NotFoundError):
            await service.create_cycle(uuid4(), START)

    @pytest.mark.asyncio
    async def test_duplicate_onset_in_same_onah_rejected(
        self, service: CycleService, cycle_store: InMemoryCycleStore
    ) -> None:
        await service.create_cycle(TEST_USER_ID, START)
        with pytest.raises(ValidationError) as exc_info:
            await service.create_cycle(TEST_USER_ID, START + timedelta(hours=1))
        assert isinstance(exc_info.value, InvalidSequenceError)
        assert "already exists" in exc_info.value.reason
        assert len(await cycle_store.find_cycles_by_user(TEST_USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_onset_inside_recorded_cycle_rejected(self, service: CycleService) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        for event, days in (("hefsek_tahara", 5), ("shiva_nekiyim_start", 6), ("mikvah", 13)):
            await service.apply_event(TEST_USER_ID, record.id, event, START + timedelta(days=days))
        with pytest.raises(InvalidSequenceError):
            await service.create_cycle(TEST_USER_ID, START + timedelta(days=8))

    @pytest.mark.asyncio
    async def test_deleted_cycle_does_not_block_its_onset(self, service: CycleService) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        await service.delete_cycle(TEST_USER_ID, record.id)
        replacement = await service.create_cycle(TEST_USER_ID, START)
        assert replacement.id != record.id


class TestReads:
    @pytest.mark.asyncio
    async def test_foreign_cycle_is_not_found(self, service: CycleService) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        with pytest.raises(NotFoundError):
            await service.get_cycle(OTHER_USER_ID, record.id)
        with pytest.raises(NotFoundError):
            await service.apply_event(
                OTHER_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=5)
            )

    @pytest.mark.asyncio
    async def test_list_is_most_recent_first(self, service: CycleService) -> None:
        older = await service.create_cycle(TEST_USER_ID, START - timedelta(days=30))
        newer = await service.create_cycle(TEST_USER_ID, START)
        assert [r.id for r in await service.list_cycles(TEST_USER_ID)] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_delete_is_soft(
        self,
        service: CycleService,
        cycle_store: InMemoryCycleStore,
        activity_log: InMemoryActivityLog,
    ) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        deleted = await service.delete_cycle(TEST_USER_ID, record.id)

        assert deleted.is_deleted is True
        assert deleted.deleted_at == NOW
        assert (await cycle_store.get_cycle(record.id)) is not None
        assert await service.list_cycles(TEST_USER_ID) == []
        with pytest.raises(NotFoundError):
            await service.get_cycle(TEST_USER_ID, record.id)
        actions = [e.action for e in await activity_log.list_for_user(TEST_USER_ID)]
        assert actions[-1] is ActivityAction.cycle_deleted

    @pytest.mark.asyncio
    async def test_predictions_for_user(self, service: CycleService) -> None:
        await service.create_cycle(TEST_USER_ID, START)
        predictions = await service.predictions(TEST_USER_ID)
        assert len(predictions) == 1
        assert await service.predictions(OTHER_USER_ID) == []


# ---------------------------------------------------------------------------
# apply_event
# ---------------------------------------------------------------------------


class TestApplyEvent:
    @pytest.mark.asyncio
    async def test_full_cycle(
        self,
        service: CycleService,
        activity_log: InMemoryActivityLog,
        notification_store: InMemoryNotificationStore,
    ) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)

        r1 = await service.apply_event(
            TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=5)
        )
        assert r1.record.version == 2
        r2 = await service.apply_event(
            TEST_USER_ID, record.id, CycleEventType.shiva_nekiyim_start, START + timedelta(days=6)
        )
        assert r2.status is CycleStatus.shiva_nekiyim
        assert _pending_types(notification_store, record.id).count(
            NotificationType.bedika_reminder
        ) == 7
        r3 = await service.apply_event(
            TEST_USER_ID, record.id, CycleEventType.mikvah, START + timedelta(days=13)
        )
        assert r3.status is CycleStatus.completed
        assert r3.record.version == 4

        actions = [e.action for e in await activity_log.list_for_user(TEST_USER_ID)]
        assert actions == [
            ActivityAction.cycle_created,
            ActivityAction.cycle_updated,
            ActivityAction.cycle_updated,
            ActivityAction.mikvah_marked,
        ]
        types = _pending_types(notification_store, record.id)
        assert NotificationType.bedika_reminder not in types
        assert NotificationType.mikvah_night in types

    @pytest.mark.asyncio
    async def test_policy_violation_surfaces_and_does_not_write(
        self, service: CycleService, cycle_store: InMemoryCycleStore
    ) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        with pytest.raises(PolicyViolationError):
            await service.apply_event(
                TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=2)
            )
        stored = await cycle_store.get_cycle(record.id)
        assert stored.version == 1
        assert stored.hefsek_tahara is None

    @pytest.mark.asyncio
    async def test_profile_minimum_niddah_days(
        self, service: CycleService, profiles: InMemoryProfileReader
    ) -> None:
        prefs = await profiles.get_preferences(TEST_USER_ID)
        profiles.set(TEST_USER_ID, dataclasses.replace(prefs, minimum_niddah_days=7))
        record = await service.create_cycle(TEST_USER_ID, START)
        with pytest.raises(PolicyViolationError):
            await service.apply_event(
                TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=6)
            )

    @pytest.mark.asyncio
    async def test_identical_reapply_is_noop(self, service: CycleService) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        ts = START + timedelta(days=5)
        await service.apply_event(TEST_USER_ID, record.id, "hefsek_tahara", ts)
        again = await service.apply_event(TEST_USER_ID, record.id, "hefsek_tahara", ts)
        assert again.changed is False
        assert again.record.version == 2


# ---------------------------------------------------------------------------
# Reminder lifecycle
# ---------------------------------------------------------------------------


class TestReminderLifecycle:
    @pytest.mark.asyncio
    async def test_delete_cancels_pending_reminders(
        self,
        service: CycleService,
        scheduler: NotificationScheduler,
        notification_store: InMemoryNotificationStore,
        delivery: FakeDelivery,
    ) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        assert _pending_types(notification_store, record.id)

        await service.delete_cycle(TEST_USER_ID, record.id)

        assert _pending_types(notification_store, record.id) == []
        report = await scheduler.process_due(NOW + timedelta(days=60))
        assert report.examined == 0
        assert delivery.sent == []

    @pytest.mark.asyncio
    async def test_deleting_latest_cycle_hands_reminders_back(
        self, service: CycleService, notification_store: InMemoryNotificationStore
    ) -> None:
        older = await service.create_cycle(TEST_USER_ID, START - timedelta(days=3))
        newer = await service.create_cycle(TEST_USER_ID, START)
        assert _pending_types(notification_store, older.id) == []

        await service.delete_cycle(TEST_USER_ID, newer.id)

        assert _pending_types(notification_store, newer.id) == []
        assert NotificationType.vest_onah in _pending_types(notification_store, older.id)

    @pytest.mark.asyncio
    async def test_new_onset_retires_previous_cycle_reminders(
        self,
        service: CycleService,
        notification_store: InMemoryNotificationStore,
        clock: FixedClock,
    ) -> None:
        first = await service.create_cycle(TEST_USER_ID, START)
        assert NotificationType.vest_onah in _pending_types(notification_store, first.id)

        clock.advance(days=27)
        second = await service.create_cycle(TEST_USER_ID, START + timedelta(days=27))

        assert _pending_types(notification_store, first.id) == []
        assert NotificationType.vest_onah in _pending_types(notification_store, second.id)

    @pytest.mark.asyncio
    async def test_recorded_event_retires_its_reminder(
        self, service: CycleService, notification_store: InMemoryNotificationStore
    ) -> None:
        record = await service.create_cycle(TEST_USER_ID, START)
        assert NotificationType.hefsek_tahara in _pending_types(notification_store, record.id)

        await service.apply_event(
            TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=5)
        )
        types = _pending_types(notification_store, record.id)
        assert NotificationType.hefsek_tahara not in types
        assert NotificationType.shiva_nekiyim_start in types

        await service.apply_event(
            TEST_USER_ID, record.id, "shiva_nekiyim_start", START + timedelta(days=6)
        )
        types = _pending_types(notification_store, record.id)
        assert NotificationType.shiva_nekiyim_start not in types
        assert types.count(NotificationType.bedika_reminder) == 7


# ---------------------------------------------------------------------------
# Optimistic concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.fixture
    def interleaving_service(
        self,
        notification_store,
        activity_log,
        profiles,
        scheduler: NotificationScheduler,
        clock: FixedClock,
        tracking_config,
    ) -> tuple[CycleService, InterleavingCycleStore]:
        store = InterleavingCycleStore()
        svc = _service_with(
            store, notification_store, activity_log, profiles, scheduler, clock, tracking_config
        )
        return svc, store

    @pytest.mark.asyncio
    async def test_concurrent_identical_writes_apply_once(self, interleaving_service) -> None:
        svc, store = interleaving_service
        record = await svc.create_cycle(TEST_USER_ID, START)
        ts = START + timedelta(days=5)

        a, b = await asyncio.gather(
            svc.apply_event(TEST_USER_ID, record.id, "hefsek_tahara", ts),
            svc.apply_event(TEST_USER_ID, record.id, "hefsek_tahara", ts),
        )

        assert sorted([a.changed, b.changed]) == [False, True]
        assert (await store.get_cycle(record.id)).version == 2

    @pytest.mark.asyncio
    async def test_concurrent_conflicting_writes_lose_one(self, interleaving_service) -> None:
        svc, store = interleaving_service
        record = await svc.create_cycle(TEST_USER_ID, START)

        results = await asyncio.gather(
            svc.apply_event(TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=5)),
            svc.apply_event(TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=6)),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidSequenceError)
        stored = await store.get_cycle(record.id)
        assert stored.version == 2
        assert stored.hefsek_tahara == START + timedelta(days=5)

    @pytest.mark.asyncio
    async def test_conflict_after_retry_surfaces(
        self,
        notification_store,
        activity_log,
        profiles,
        scheduler: NotificationScheduler,
        clock: FixedClock,
        tracking_config,
    ) -> None:
        store = AlwaysConflictingStore()
        svc = _service_with(
            store, notification_store, activity_log, profiles, scheduler, clock, tracking_config
        )
        record = await svc.create_cycle(TEST_USER_ID, START)

        with pytest.raises(ConflictError):
            await svc.apply_event(
                TEST_USER_ID, record.id, "hefsek_tahara", START + timedelta(days=5)
            )
        assert store.save_calls == 2
