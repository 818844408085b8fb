"""Cycle service: the single entry point for cycle writes.

Every mutation of a cycle goes through here.  A write loads the record,
runs it through the state machine and saves it with an optimistic version
check.  If another writer got there first the record is reloaded and the
write retried once before ``ConflictError`` is surfaced.

Accepted events are then consumed in-process: an activity entry is written,
the user's predictions are recomputed and the reminders they imply are
scheduled.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Callable
from uuid import UUID

from src.tracking.calendar import onah_slot_for
from src.tracking.config_loader import TrackingConfig, get_tracking_config
from src.tracking.errors import (
    ConflictError,
    InvalidSequenceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from src.tracking.notifications import NotificationScheduler
from src.tracking.predictor import VesetPrediction, predict_next_onsets
from src.tracking.records import (
    EVENT_FIELDS,
    ActivityAction,
    CycleEventType,
    CycleRecord,
    Notification,
    UserPreferences,
    new_activity_entry,
    new_cycle_record,
)
from src.tracking.state_machine import EventResult, apply_event, mark_deleted
from src.tracking.storage.base import (
    ActivityLogStore,
    Clock,
    CycleStore,
    NotificationStore,
    ProfileReader,
)

logger = logging.getLogger("mikvahcal.tracking.service")

# One reload-and-retry after a version conflict, then give up
_MAX_ATTEMPTS = 2


class CycleService:
    """Orchestrates cycle writes, predictions and reminder scheduling.

    Usage::

        service = CycleService(cycles, notifications, activity, profiles, scheduler, clock)
        record = await service.create_cycle(user_id, period_start)
        result = await service.apply_event(user_id, record.id, "hefsek_tahara", ts)
    """

    def __init__(
        self,
        cycles: CycleStore,
        notifications: NotificationStore,
        activity: ActivityLogStore,
        profiles: ProfileReader,
        scheduler: NotificationScheduler,
        clock: Clock,
        config: TrackingConfig | None = None,
    ) -> None:
        self._cycles = cycles
        self._notifications = notifications
        self._activity = activity
        self._profiles = profiles
        self._scheduler = scheduler
        self._clock = clock
        self._config = config or get_tracking_config()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_cycle(self, user_id: UUID, cycle_id: UUID) -> CycleRecord:
        """Return a live cycle owned by ``user_id``.

        Raises:
            NotFoundError: Unknown id, another user's cycle, or a deleted cycle.
        """
        record = await self._cycles.get_cycle(cycle_id)
        if record is None or record.user_id != user_id or record.is_deleted:
            raise NotFoundError(f"Cycle {cycle_id} not found")
        return record

    async def list_cycles(self, user_id: UUID) -> list[CycleRecord]:
        """Live cycles, most recent period start first."""
        records = await self._cycles.find_cycles_by_user(user_id)
        live = [r for r in records if not r.is_deleted]
        return sorted(live, key=lambda r: r.period_start, reverse=True)

    async def predictions(self, user_id: UUID) -> list[VesetPrediction]:
        preferences = await self._profiles.get_preferences(user_id)
        history = await self._cycles.find_cycles_by_user(user_id)
        return predict_next_onsets(history, preferences, self._config)

    async def list_notifications(
        self, user_id: UUID, status: str | None = None
    ) -> list[Notification]:
        return await self._notifications.list_for_user(user_id, status=status)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_cycle(
        self,
        user_id: UUID,
        period_start: datetime,
        notes: str | None = None,
        private_notes: str | None = None,
    ) -> CycleRecord:
        """Start a new cycle in the ``niddah`` state.

        The cycle is stamped with the timezone of the user's profile.

        Raises:
            NotFoundError:   Unknown user.
            ValidationError: Naive timestamp, over-long notes, or an onset that
                             overlaps an existing live cycle.
        """
        preferences = await self._profiles.get_preferences(user_id)
        now = self._clock.now()
        try:
            record = new_cycle_record(
                user_id, period_start, preferences.timezone, now,
                notes=notes, private_notes=private_notes,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        await self._check_overlap(user_id, record.period_start, preferences)

        record = await self._cycles.insert_cycle(record)
        logger.info("Created cycle %s for user %s", record.id, user_id)
        await self._activity.append(
            new_activity_entry(
                user_id, ActivityAction.cycle_created, record.id, now,
                {"period_start": period_start.isoformat()},
            )
        )
        await self._refresh_reminders(record, preferences)
        return record

    async def apply_event(
        self,
        user_id: UUID,
        cycle_id: UUID,
        event_type: CycleEventType | str,
        timestamp: datetime,
    ) -> EventResult:
        """Record one cycle event.

        Raises:
            NotFoundError:        Unknown or foreign cycle, or unknown user.
            InvalidSequenceError: The event breaks the event ordering.
            PolicyViolationError: A halachic minimum was not met.
            ConflictError:        Lost the version race twice in a row.
        """
        event_type = CycleEventType(event_type)
        preferences = await self._profiles.get_preferences(user_id)
        minimum_niddah_days = self._config.clamp_niddah_days(preferences.minimum_niddah_days)
        results: list[EventResult] = []

        def mutate(record: CycleRecord) -> CycleRecord | None:
            result = apply_event(
                record, event_type, timestamp,
                minimum_niddah_days=minimum_niddah_days,
                now=self._clock.now(),
                shiva_nekiyim_days=self._config.halachic.shiva_nekiyim_days,
            )
            results.append(result)
            return result.record if result.changed else None

        stored = await self._write(user_id, cycle_id, mutate)
        result = results[-1]
        if stored is None:
            return result

        result = dataclasses.replace(result, record=stored)
        event = result.event
        logger.info(
            "Cycle %s: %s recorded (%s -> %s)",
            cycle_id, event_type.value, event.previous_status.value, event.status.value,
        )
        action = (
            ActivityAction.mikvah_marked
            if event_type is CycleEventType.mikvah
            else ActivityAction.cycle_updated
        )
        await self._activity.append(
            new_activity_entry(
                user_id, action, cycle_id, self._clock.now(),
                {
                    EVENT_FIELDS[event_type]: {"before": None, "after": timestamp.isoformat()},
                    "status": {
                        "before": event.previous_status.value,
                        "after": event.status.value,
                    },
                },
            )
        )
        await self._refresh_reminders(stored, preferences)
        return result

    async def delete_cycle(self, user_id: UUID, cycle_id: UUID) -> CycleRecord:
        """Soft-delete a cycle and cancel its pending reminders.

        The retention sweeper removes the record after the grace period.
        """
        now = self._clock.now()
        stored = await self._write(user_id, cycle_id, lambda r: mark_deleted(r, now))
        logger.info("Soft-deleted cycle %s for user %s", cycle_id, user_id)
        await self._activity.append(
            new_activity_entry(user_id, ActivityAction.cycle_deleted, cycle_id, now)
        )
        await self._refresh_reminders(stored, await self._profiles.get_preferences(user_id))
        return stored

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _write(
        self,
        user_id: UUID,
        cycle_id: UUID,
        mutate: Callable[[CycleRecord], CycleRecord | None],
    ) -> CycleRecord | None:
        """Load, mutate and save with a version check, retrying once on conflict.

        ``mutate`` returns the new record, or None when nothing changed.
        """
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            record = await self.get_cycle(user_id, cycle_id)
            updated = mutate(record)
            if updated is None:
                return None
            try:
                return await self._cycles.save(updated, expected_version=record.version)
            except ConflictError:
                if attempt == _MAX_ATTEMPTS:
                    logger.warning(
                        "Cycle %s: version conflict persisted after %d attempts",
                        cycle_id, attempt,
                    )
                    raise
                logger.info("Cycle %s: version conflict, reloading and retrying", cycle_id)
        raise AssertionError("unreachable")

    async def _check_overlap(
        self, user_id: UUID, period_start: datetime, preferences: UserPreferences
    ) -> None:
        """Reject an onset that duplicates or falls inside an existing live cycle.

        A new onset may not share an onah with an existing period start, and
        may not fall between an existing period start and the last event
        recorded on that cycle.
        """
        zone = preferences.zone
        slot = onah_slot_for(period_start, zone, self._config.onah)
        for existing in await self.list_cycles(user_id):
            recorded = [
                ts for ts in (
                    existing.period_start,
                    existing.hefsek_tahara,
                    existing.shiva_nekiyim_start,
                    existing.mikvah_date,
                )
                if ts is not None
            ]
            same_onah = onah_slot_for(existing.period_start, zone, self._config.onah) == slot
            if same_onah or existing.period_start <= period_start <= max(recorded):
                started = existing.period_start.astimezone(zone)
                raise InvalidSequenceError(
                    f"A period already exists for this time (started "
                    f"{started:%Y-%m-%d %H:%M}); delete it first to replace it"
                )

    async def _refresh_reminders(self, record: CycleRecord, preferences: UserPreferences) -> None:
        """Reconcile pending reminders after ``record`` was written.

        Reminders follow the most recent live onset only.  The latest cycle is
        rescheduled with fresh predictions; a deleted cycle, an older cycle
        that was written, and the cycle the latest one superseded lose their
        pending reminders.

        The cycle write has already committed, so a storage failure here is
        logged and left to the next write to repair.
        """
        try:
            history = await self._cycles.find_cycles_by_user(record.user_id)
            live = sorted((r for r in history if not r.is_deleted), key=lambda r: r.period_start)
            retire = {c.id for c in live[-2:-1]}
            if not live or live[-1].id != record.id:
                retire.add(record.id)
            for cycle_id in retire:
                await self._scheduler.cancel_for_cycle(cycle_id)
            if live:
                predictions = predict_next_onsets(live, preferences, self._config)
                await self._scheduler.schedule_for_cycle(live[-1], predictions, preferences)
        except StorageError as exc:
            logger.error("Could not schedule reminders for cycle %s: %s", record.id, exc)
