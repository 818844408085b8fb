"""Shared fixtures and fakes for the tracking core test suite.

Everything runs against the in-memory stores and a fixed clock, so no test
touches a database, the network or the wall clock.
"""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from uuid import UUID
from zoneinfo import ZoneInfo

import pytest

from src.tracking.config_loader import TrackingConfig, load_tracking_config
from src.tracking.errors import DeliveryFailure
from src.tracking.notifications import NotificationScheduler
from src.tracking.records import CycleRecord, Notification, UserPreferences, new_cycle_record
from src.tracking.service import CycleService
from src.tracking.storage.memory import (
    InMemoryActivityLog,
    InMemoryCycleStore,
    InMemoryNotificationStore,
    InMemoryProfileReader,
)

# Canonical test users
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")

JERUSALEM = ZoneInfo("Asia/Jerusalem")
NEW_YORK = ZoneInfo("America/New_York")

# 14:00 in Jerusalem (UTC+2 before the March DST change)
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> None:
        self._now += timedelta(**kwargs)


class FakeDelivery:
    """Delivery double: records sends, fails or stalls selected notifications."""

    def __init__(self) -> None:
        self.sent: list[UUID] = []
        self.failing: set[UUID] = set()
        self.slow: set[UUID] = set()

    async def send(self, notification: Notification) -> None:
        if notification.id in self.slow:
            await asyncio.sleep(5)
        if notification.id in self.failing:
            raise DeliveryFailure("SMTP relay refused the message")
        self.sent.append(notification.id)


def make_cycle(
    period_start: datetime,
    user_id: UUID = TEST_USER_ID,
    created_at: datetime | None = None,
    tz: str = "Asia/Jerusalem",
    **fields,
) -> CycleRecord:
    """Build a cycle record, optionally with event timestamps already set."""
    record = new_cycle_record(user_id, period_start, tz, created_at or period_start)
    if fields:
        record = dataclasses.replace(record, **fields)
    return record


# ---------------------------------------------------------------------------
# Config / collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def tracking_config() -> TrackingConfig:
    """Load the real tracking config for tests."""
    return load_tracking_config()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def preferences() -> UserPreferences:
    return UserPreferences(timezone="Asia/Jerusalem")


@pytest.fixture
def cycle_store() -> InMemoryCycleStore:
    return InMemoryCycleStore()


@pytest.fixture
def notification_store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def activity_log() -> InMemoryActivityLog:
    return InMemoryActivityLog()


@pytest.fixture
def profiles(preferences: UserPreferences) -> InMemoryProfileReader:
    reader = InMemoryProfileReader()
    reader.set(TEST_USER_ID, preferences, email="user@example.com")
    reader.set(OTHER_USER_ID, UserPreferences(timezone="America/New_York"))
    return reader


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def scheduler(
    notification_store: InMemoryNotificationStore,
    delivery: FakeDelivery,
    clock: FixedClock,
    activity_log: InMemoryActivityLog,
    tracking_config: TrackingConfig,
) -> NotificationScheduler:
    return NotificationScheduler(
        notification_store, delivery, clock, activity_log, tracking_config
    )


@pytest.fixture
def service(
    cycle_store: InMemoryCycleStore,
    notification_store: InMemoryNotificationStore,
    activity_log: InMemoryActivityLog,
    profiles: InMemoryProfileReader,
    scheduler: NotificationScheduler,
    clock: FixedClock,
    tracking_config: TrackingConfig,
) -> CycleService:
    return CycleService(
        cycle_store, notification_store, activity_log, profiles, scheduler, clock,
        tracking_config,
    )
