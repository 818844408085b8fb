"""Domain records for the cycle tracking core.

Records are plain dataclasses.  They are created only through the factory
functions below, which stamp ``created_at``/``updated_at`` explicitly; updates
produce new copies via ``dataclasses.replace`` with an explicit ``updated_at``.
A cycle's status is never stored as independent truth: it is derived from the
event timestamps on every read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

NOTES_MAX_LENGTH = 500


class CycleStatus(str, Enum):
    niddah = "niddah"
    shiva_nekiyim = "shiva_nekiyim"
    completed = "completed"


class CycleEventType(str, Enum):
    hefsek_tahara = "hefsek_tahara"
    shiva_nekiyim_start = "shiva_nekiyim_start"
    mikvah = "mikvah"


class NotificationType(str, Enum):
    hefsek_tahara = "hefsek_tahara"
    shiva_nekiyim_start = "shiva_nekiyim_start"
    bedika_reminder = "bedika_reminder"
    mikvah_night = "mikvah_night"
    vest_onah = "vest_onah"


class NotificationStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class ActivityAction(str, Enum):
    cycle_created = "cycle_created"
    cycle_updated = "cycle_updated"
    cycle_deleted = "cycle_deleted"
    mikvah_marked = "mikvah_marked"
    reminder_sent = "reminder_sent"


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware")


# ---------------------------------------------------------------------------
# Cycle records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CycleRecord:
    """One cycle, anchored on its period start.

    Attributes:
        id:                  Cycle UUID.
        user_id:             Owner.
        period_start:        Onset timestamp. Immutable after creation.
        timezone:            IANA zone the cycle was recorded in.
        hefsek_tahara:       End-of-bleeding declaration, set once.
        shiva_nekiyim_start: First of the seven clean days, set once.
        mikvah_date:         Immersion, set once; completes the cycle.
        version:             Optimistic concurrency counter, bumped by the store.
    """

    id: UUID
    user_id: UUID
    period_start: datetime
    timezone: str
    created_at: datetime
    updated_at: datetime
    hefsek_tahara: datetime | None = None
    shiva_nekiyim_start: datetime | None = None
    mikvah_date: datetime | None = None
    notes: str | None = None
    private_notes: str | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    version: int = 1

    @property
    def status(self) -> CycleStatus:
        return derive_status(self)

    def event_timestamp(self, event_type: CycleEventType) -> datetime | None:
        return getattr(self, EVENT_FIELDS[event_type])


EVENT_FIELDS: dict[CycleEventType, str] = {
    CycleEventType.hefsek_tahara: "hefsek_tahara",
    CycleEventType.shiva_nekiyim_start: "shiva_nekiyim_start",
    CycleEventType.mikvah: "mikvah_date",
}


def derive_status(record: CycleRecord) -> CycleStatus:
    """Derive a cycle's status from its recorded timestamps.

    A hefsek without the start of the clean days is still ``niddah``.
    """
    if record.mikvah_date is not None:
        return CycleStatus.completed
    if record.shiva_nekiyim_start is not None:
        return CycleStatus.shiva_nekiyim
    return CycleStatus.niddah


def new_cycle_record(
    user_id: UUID,
    period_start: datetime,
    timezone: str,
    now: datetime,
    notes: str | None = None,
    private_notes: str | None = None,
) -> CycleRecord:
    """Create a fresh cycle in the ``niddah`` state.

    Raises:
        ValueError: On a naive timestamp, unknown timezone or over-long notes.
    """
    _require_aware(period_start, "period_start")
    _require_aware(now, "now")
    validate_timezone(timezone)
    for name, text in (("notes", notes), ("private_notes", private_notes)):
        if text is not None and len(text) > NOTES_MAX_LENGTH:
            raise ValueError(f"{name} exceeds {NOTES_MAX_LENGTH} characters")
    return CycleRecord(
        id=uuid4(),
        user_id=user_id,
        period_start=period_start,
        timezone=timezone,
        created_at=now,
        updated_at=now,
        notes=notes,
        private_notes=private_notes,
    )


def validate_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        ValueError: If the zone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Notification:
    """A reminder scheduled for one user.

    Lifecycle: ``pending`` → ``sent`` | ``failed``; terminal states are final.
    """

    id: UUID
    user_id: UUID
    cycle_id: UUID | None
    type: NotificationType
    title: str
    message: str
    scheduled_for: datetime
    created_at: datetime
    status: NotificationStatus = NotificationStatus.pending
    hebrew_date: str | None = None
    failure_reason: str | None = None
    sent_at: datetime | None = None

    @property
    def dedup_key(self) -> tuple[UUID, UUID | None, NotificationType, datetime]:
        return (self.user_id, self.cycle_id, self.type, self.scheduled_for)

    @property
    def is_terminal(self) -> bool:
        return self.status is not NotificationStatus.pending


def new_notification(
    user_id: UUID,
    cycle_id: UUID | None,
    type: NotificationType,
    scheduled_for: datetime,
    title: str,
    message: str,
    now: datetime,
    hebrew_date: str | None = None,
) -> Notification:
    _require_aware(scheduled_for, "scheduled_for")
    return Notification(
        id=uuid4(),
        user_id=user_id,
        cycle_id=cycle_id,
        type=type,
        title=title,
        message=message,
        scheduled_for=scheduled_for,
        created_at=now,
        hebrew_date=hebrew_date,
    )


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActivityLogEntry:
    id: UUID
    user_id: UUID
    action: ActivityAction
    entity_id: UUID | None
    created_at: datetime
    changes: dict[str, Any] = field(default_factory=dict)


def new_activity_entry(
    user_id: UUID,
    action: ActivityAction,
    entity_id: UUID | None,
    now: datetime,
    changes: dict[str, Any] | None = None,
) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=uuid4(),
        user_id=user_id,
        action=action,
        entity_id=entity_id,
        created_at=now,
        changes=changes or {},
    )


# ---------------------------------------------------------------------------
# User preferences (read-only input owned by the profile)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserPreferences:
    """Profile fields the tracking core reads. Never written by the core.

    Attributes:
        timezone:            IANA zone of the user's registered location.
        ohr_zaruah:          Also observe the onah preceding each veset.
        kreisi_upleisi:      Also observe the opposite onah of day 30.
        chasam_sofer:        Also observe day 31.
        minimum_niddah_days: Earliest hefsek day count, 4–10.
        reminder_time:       Local time of day for date-only reminders.
    """

    timezone: str = "Asia/Jerusalem"
    ohr_zaruah: bool = False
    kreisi_upleisi: bool = False
    chasam_sofer: bool = False
    minimum_niddah_days: int = 5
    notifications_enabled: bool = True
    hefsek_tahara_reminder: bool = True
    shiva_nekiyim_reminder: bool = True
    mikvah_reminder: bool = True
    vest_onot_reminder: bool = True
    reminder_time: time = time(9, 0)

    def __post_init__(self) -> None:
        validate_timezone(self.timezone)
        if not 4 <= self.minimum_niddah_days <= 10:
            raise ValueError(
                f"minimum_niddah_days must be between 4 and 10, got {self.minimum_niddah_days}"
            )

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def reminder_enabled(self, type: NotificationType) -> bool:
        """Return True if the user wants reminders of this type."""
        if not self.notifications_enabled:
            return False
        toggle = {
            NotificationType.hefsek_tahara: self.hefsek_tahara_reminder,
            NotificationType.shiva_nekiyim_start: self.shiva_nekiyim_reminder,
            NotificationType.bedika_reminder: self.shiva_nekiyim_reminder,
            NotificationType.mikvah_night: self.mikvah_reminder,
            NotificationType.vest_onah: self.vest_onot_reminder,
        }
        return toggle[type]
