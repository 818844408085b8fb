"""Cycle state machine.

A cycle moves ``niddah`` → ``shiva_nekiyim`` → ``completed`` as its events are
recorded.  The status is a pure function of the four timestamps; events are
validated against the ordering invariant

    period_start ≤ hefsek_tahara ≤ shiva_nekiyim_start ≤ mikvah_date

and the halachic minimums before a new record copy is produced.  Nothing here
touches storage: the caller persists the returned record.

Usage::

    result = apply_event(record, CycleEventType.hefsek_tahara, ts,
                         minimum_niddah_days=5, now=clock.now())
    await store.save(result.record, expected_version=record.version)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from src.tracking.errors import InvalidSequenceError, PolicyViolationError
from src.tracking.records import (
    EVENT_FIELDS,
    CycleEventType,
    CycleRecord,
    CycleStatus,
    derive_status,
)

SHIVA_NEKIYIM_DAYS = 7

# Each event requires the one before it to be recorded first
_PREDECESSOR: dict[CycleEventType, CycleEventType | None] = {
    CycleEventType.hefsek_tahara: None,
    CycleEventType.shiva_nekiyim_start: CycleEventType.hefsek_tahara,
    CycleEventType.mikvah: CycleEventType.shiva_nekiyim_start,
}
_SUCCESSOR: dict[CycleEventType, CycleEventType | None] = {
    CycleEventType.hefsek_tahara: CycleEventType.shiva_nekiyim_start,
    CycleEventType.shiva_nekiyim_start: CycleEventType.mikvah,
    CycleEventType.mikvah: None,
}


@dataclass(frozen=True)
class CycleEvent:
    """Domain event emitted for every accepted state-machine write."""

    cycle_id: UUID
    user_id: UUID
    event_type: CycleEventType
    timestamp: datetime
    previous_status: CycleStatus
    status: CycleStatus


@dataclass(frozen=True)
class EventResult:
    """Outcome of ``apply_event``.

    ``event`` is None when the write was an identical re-application and the
    record was left unchanged.
    """

    record: CycleRecord
    status: CycleStatus
    event: CycleEvent | None

    @property
    def changed(self) -> bool:
        return self.event is not None


def _previous_timestamp(record: CycleRecord, event_type: CycleEventType) -> datetime:
    predecessor = _PREDECESSOR[event_type]
    if predecessor is None:
        return record.period_start
    return record.event_timestamp(predecessor)


def apply_event(
    record: CycleRecord,
    event_type: CycleEventType,
    timestamp: datetime,
    *,
    minimum_niddah_days: int,
    now: datetime,
    shiva_nekiyim_days: int = SHIVA_NEKIYIM_DAYS,
) -> EventResult:
    """Validate and apply one cycle event.

    Args:
        record:              Current cycle record (not mutated).
        event_type:          Which event is being recorded.
        timestamp:           Aware timestamp of the event.
        minimum_niddah_days: Earliest hefsek, in days after the period start.
        now:                 Used for ``updated_at``.
        shiva_nekiyim_days:  Clean days required before the mikvah.

    Returns:
        EventResult with the updated copy, the derived status and the domain event.

    Raises:
        InvalidSequenceError: Naive timestamp, missing predecessor, ordering
                              violation, or a different value for a set-once field.
        PolicyViolationError: Hefsek before the minimum niddah days, or mikvah
                              before the seven clean days have passed.
    """
    event_type = CycleEventType(event_type)
    if timestamp.tzinfo is None or timestamp.utcoffset() is None:
        raise InvalidSequenceError(f"{event_type.value} timestamp must include a timezone")
    if record.is_deleted:
        raise InvalidSequenceError("Cannot record events on a deleted cycle")

    field_name = EVENT_FIELDS[event_type]
    existing = record.event_timestamp(event_type)
    previous_status = derive_status(record)

    if existing is not None:
        if existing == timestamp:
            return EventResult(record=record, status=previous_status, event=None)
        raise InvalidSequenceError(f"{event_type.value} is already recorded for this cycle")

    predecessor = _PREDECESSOR[event_type]
    if predecessor is not None and record.event_timestamp(predecessor) is None:
        raise InvalidSequenceError(
            f"{predecessor.value} must be recorded before {event_type.value}"
        )

    previous = _previous_timestamp(record, event_type)
    if timestamp < previous:
        raise InvalidSequenceError(
            f"{event_type.value} cannot be earlier than "
            f"{predecessor.value if predecessor else 'the period start'}"
        )

    # Later events can only exist if this one did, but guard the invariant anyway
    successor = _SUCCESSOR[event_type]
    if successor is not None:
        later = record.event_timestamp(successor)
        if later is not None and timestamp > later:
            raise InvalidSequenceError(
                f"{event_type.value} cannot be later than {successor.value}"
            )

    if event_type is CycleEventType.hefsek_tahara:
        earliest = record.period_start + timedelta(days=minimum_niddah_days)
        if timestamp < earliest:
            raise PolicyViolationError(
                f"Hefsek tahara requires at least {minimum_niddah_days} days "
                f"after the period start"
            )
    elif event_type is CycleEventType.mikvah:
        earliest = record.shiva_nekiyim_start + timedelta(days=shiva_nekiyim_days)
        if timestamp < earliest:
            raise PolicyViolationError(
                f"Mikvah must be at least {shiva_nekiyim_days} days after shiva nekiyim start"
            )

    updated = dataclasses.replace(record, **{field_name: timestamp, "updated_at": now})
    status = derive_status(updated)
    event = CycleEvent(
        cycle_id=record.id,
        user_id=record.user_id,
        event_type=event_type,
        timestamp=timestamp,
        previous_status=previous_status,
        status=status,
    )
    return EventResult(record=updated, status=status, event=event)


def mark_deleted(record: CycleRecord, now: datetime) -> CycleRecord:
    """Soft-delete a cycle. Physical deletion is left to the retention sweeper."""
    if record.is_deleted:
        return record
    return dataclasses.replace(record, is_deleted=True, deleted_at=now, updated_at=now)
