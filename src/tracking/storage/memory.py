"""Dict-backed stores.

Used by the test suite and for running the API without a database.  Each
method completes without awaiting anything, so a check-and-write inside one
call is atomic with respect to other coroutines on the event loop.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Collection
from uuid import UUID

from src.tracking.errors import ConflictError, NotFoundError
from src.tracking.records import (
    ActivityLogEntry,
    CycleRecord,
    Notification,
    NotificationStatus,
    UserPreferences,
)
from src.tracking.storage.base import CycleFilter


class InMemoryCycleStore:
    def __init__(self) -> None:
        self._records: dict[UUID, CycleRecord] = {}

    async def find_cycles_by_user(self, user_id: UUID) -> list[CycleRecord]:
        records = [r for r in self._records.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.period_start)

    async def get_cycle(self, cycle_id: UUID) -> CycleRecord | None:
        return self._records.get(cycle_id)

    async def insert_cycle(self, record: CycleRecord) -> CycleRecord:
        if record.id in self._records:
            raise ConflictError(f"Cycle {record.id} already exists")
        self._records[record.id] = record
        return record

    async def save(self, record: CycleRecord, expected_version: int) -> CycleRecord:
        current = self._records.get(record.id)
        if current is None:
            raise NotFoundError(f"Cycle {record.id} not found")
        if current.version != expected_version:
            raise ConflictError(
                f"Cycle {record.id} was modified concurrently "
                f"(expected v{expected_version}, found v{current.version})"
            )
        stored = dataclasses.replace(record, version=expected_version + 1)
        self._records[record.id] = stored
        return stored

    async def delete_many(self, where: CycleFilter) -> int:
        doomed = [cid for cid, r in self._records.items() if where.matches(r)]
        for cid in doomed:
            del self._records[cid]
        return len(doomed)


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self._items: dict[UUID, Notification] = {}

    async def insert_if_absent(self, notification: Notification) -> tuple[Notification, bool]:
        for existing in self._items.values():
            if (
                existing.dedup_key == notification.dedup_key
                and existing.status is not NotificationStatus.failed
            ):
                return existing, False
        self._items[notification.id] = notification
        return notification, True

    async def find_pending_notifications(self, now: datetime, limit: int) -> list[Notification]:
        due = [
            n for n in self._items.values()
            if n.status is NotificationStatus.pending and n.scheduled_for <= now
        ]
        due.sort(key=lambda n: n.scheduled_for)
        return due[:limit]

    async def save(self, notification: Notification) -> Notification:
        if notification.id not in self._items:
            raise NotFoundError(f"Notification {notification.id} not found")
        self._items[notification.id] = notification
        return notification

    async def list_for_user(
        self, user_id: UUID, status: str | None = None
    ) -> list[Notification]:
        items = [
            n for n in self._items.values()
            if n.user_id == user_id and (status is None or n.status.value == status)
        ]
        return sorted(items, key=lambda n: n.scheduled_for)

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        doomed = [
            nid for nid, n in self._items.items()
            if n.is_terminal and n.scheduled_for < cutoff
        ]
        for nid in doomed:
            del self._items[nid]
        return len(doomed)

    async def delete_pending(self, ids: Collection[UUID]) -> int:
        doomed = [
            nid for nid in set(ids)
            if nid in self._items and self._items[nid].status is NotificationStatus.pending
        ]
        for nid in doomed:
            del self._items[nid]
        return len(doomed)

    async def delete_pending_for_cycle(self, cycle_id: UUID) -> int:
        return await self.delete_pending(
            [nid for nid, n in self._items.items() if n.cycle_id == cycle_id]
        )

    def all(self) -> list[Notification]:
        return list(self._items.values())


class InMemoryActivityLog:
    def __init__(self) -> None:
        self._entries: list[ActivityLogEntry] = []

    async def append(self, entry: ActivityLogEntry) -> None:
        self._entries.append(entry)

    async def list_for_user(self, user_id: UUID) -> list[ActivityLogEntry]:
        return [e for e in self._entries if e.user_id == user_id]

    async def delete_before(self, cutoff: datetime) -> int:
        before = len(self._entries)
        self._entries = [e for e in self._entries if not e.created_at < cutoff]
        return before - len(self._entries)


class InMemoryProfileReader:
    def __init__(
        self,
        preferences: dict[UUID, UserPreferences] | None = None,
        emails: dict[UUID, str] | None = None,
    ) -> None:
        self._preferences = dict(preferences or {})
        self._emails = dict(emails or {})

    def set(self, user_id: UUID, preferences: UserPreferences, email: str | None = None) -> None:
        self._preferences[user_id] = preferences
        if email is not None:
            self._emails[user_id] = email

    async def get_preferences(self, user_id: UUID) -> UserPreferences:
        try:
            return self._preferences[user_id]
        except KeyError:
            raise NotFoundError(f"User {user_id} not found") from None

    async def get_contact_email(self, user_id: UUID) -> str | None:
        return self._emails.get(user_id)
