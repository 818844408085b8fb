"""Storage and collaborator interfaces consumed by the tracking core.

Two implementations ship with the package:

    memory   : dict-backed stores for tests and local runs
    postgres : asyncpg-backed stores used by the API process

Every write to cycle or notification state goes through the service and
scheduler contracts; the stores themselves only persist what they are given.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Collection, Protocol
from uuid import UUID

from src.tracking.records import (
    ActivityLogEntry,
    CycleRecord,
    Notification,
    UserPreferences,
)


@dataclass(frozen=True)
class CycleFilter:
    """Selection for ``CycleStore.delete_many``.

    Attributes:
        is_deleted:        Match on the soft-delete flag.
        created_before:    Match records created strictly before this instant.
        deleted_before:    Match records soft-deleted strictly before this instant.
    """

    is_deleted: bool | None = None
    created_before: datetime | None = None
    deleted_before: datetime | None = None

    def matches(self, record: CycleRecord) -> bool:
        if self.is_deleted is not None and record.is_deleted != self.is_deleted:
            return False
        if self.created_before is not None and not record.created_at < self.created_before:
            return False
        if self.deleted_before is not None:
            if record.deleted_at is None or not record.deleted_at < self.deleted_before:
                return False
        return True


class CycleStore(Protocol):
    async def find_cycles_by_user(self, user_id: UUID) -> list[CycleRecord]:
        """All cycles of a user (including soft-deleted), oldest period start first."""
        ...

    async def get_cycle(self, cycle_id: UUID) -> CycleRecord | None: ...

    async def insert_cycle(self, record: CycleRecord) -> CycleRecord: ...

    async def save(self, record: CycleRecord, expected_version: int) -> CycleRecord:
        """Persist ``record`` if the stored version still equals ``expected_version``.

        Returns the stored record with its version incremented.

        Raises:
            ConflictError: The stored version moved on.
            NotFoundError: The record no longer exists.
        """
        ...

    async def delete_many(self, where: CycleFilter) -> int:
        """Hard-delete matching cycles and return how many were removed."""
        ...


class NotificationStore(Protocol):
    async def insert_if_absent(self, notification: Notification) -> tuple[Notification, bool]:
        """Insert unless a pending or sent notification has the same dedup key.

        Returns ``(stored, created)``. Check and insert are atomic.
        """
        ...

    async def find_pending_notifications(self, now: datetime, limit: int) -> list[Notification]:
        """Pending notifications with ``scheduled_for <= now``, earliest first."""
        ...

    async def save(self, notification: Notification) -> Notification: ...

    async def list_for_user(
        self, user_id: UUID, status: str | None = None
    ) -> list[Notification]: ...

    async def delete_pending(self, ids: Collection[UUID]) -> int:
        """Hard-delete those of ``ids`` that are still pending. Returns the count."""
        ...

    async def delete_pending_for_cycle(self, cycle_id: UUID) -> int:
        """Hard-delete every pending notification of a cycle. Returns the count."""
        ...

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Hard-delete sent/failed notifications scheduled before ``cutoff``."""
        ...


class ActivityLogStore(Protocol):
    async def append(self, entry: ActivityLogEntry) -> None: ...

    async def list_for_user(self, user_id: UUID) -> list[ActivityLogEntry]: ...

    async def delete_before(self, cutoff: datetime) -> int: ...


class ProfileReader(Protocol):
    async def get_preferences(self, user_id: UUID) -> UserPreferences:
        """Raises NotFoundError for an unknown user."""
        ...

    async def get_contact_email(self, user_id: UUID) -> str | None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
