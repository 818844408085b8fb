"""Pydantic models for cycles, cycle events, predictions and notifications."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from pydantic import AwareDatetime, Field

from src.models.base import MikvahCalBase
from src.tracking.calendar import Onah
from src.tracking.predictor import Stringency, VesetRule
from src.tracking.records import (
    NOTES_MAX_LENGTH,
    CycleEventType,
    CycleStatus,
    NotificationStatus,
    NotificationType,
)


# ---------- Cycles ----------

class CycleCreate(MikvahCalBase):
    period_start: AwareDatetime
    notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)
    private_notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class CycleRead(MikvahCalBase):
    id: uuid.UUID
    user_id: uuid.UUID
    period_start: datetime
    hefsek_tahara: datetime | None = None
    shiva_nekiyim_start: datetime | None = None
    mikvah_date: datetime | None = None
    status: CycleStatus
    timezone: str
    notes: str | None = None
    private_notes: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class CycleEventCreate(MikvahCalBase):
    event_type: CycleEventType
    # Naive timestamps are accepted here so the state machine can reject them
    # with its own reason
    timestamp: datetime


class CycleEventRead(MikvahCalBase):
    cycle: CycleRead
    changed: bool


# ---------- Predictions ----------

class PredictionRead(MikvahCalBase):
    rule: VesetRule
    stringency: Stringency | None = None
    label: str
    onah: Onah
    local_date: date
    starts_at: datetime
    ends_at: datetime
    hebrew_date: str
    interval: int | None = None


# ---------- Notifications ----------

class NotificationRead(MikvahCalBase):
    id: uuid.UUID
    cycle_id: uuid.UUID | None = None
    type: NotificationType
    title: str
    message: str
    hebrew_date: str | None = None
    scheduled_for: datetime
    status: NotificationStatus
    failure_reason: str | None = None
    sent_at: datetime | None = None
