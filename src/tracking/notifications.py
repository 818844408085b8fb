"""Notification scheduler and dispatch sweep.

Reminders are materialized as ``pending`` notifications when a cycle changes
or its predictions are recomputed, and delivered by ``process_due`` on a
timer.  Dispatch is at-most-once per record: a failed delivery is recorded on
the notification and never retried automatically; re-scheduling creates a new
record.

Usage::

    scheduler = NotificationScheduler(notification_store, delivery, clock)
    await scheduler.schedule_for_prediction(user_id, cycle_id, p.starts_at, lead_hours=24)
    report = await scheduler.process_due()
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from src.tracking.config_loader import TrackingConfig, get_tracking_config
from src.tracking.delivery import DeliveryService
from src.tracking.errors import DeliveryFailure, NotificationStateError, StorageError
from src.tracking.predictor import VesetPrediction
from src.tracking.records import (
    ActivityAction,
    CycleRecord,
    Notification,
    NotificationStatus,
    NotificationType,
    UserPreferences,
    new_activity_entry,
    new_notification,
)
from src.tracking.storage.base import ActivityLogStore, Clock, NotificationStore

logger = logging.getLogger("mikvahcal.tracking.notifications")


def mark_sent(notification: Notification, now: datetime) -> Notification:
    if notification.is_terminal:
        raise NotificationStateError(
            f"Notification {notification.id} is already {notification.status.value}"
        )
    return dataclasses.replace(notification, status=NotificationStatus.sent, sent_at=now)


def mark_failed(notification: Notification, reason: str) -> Notification:
    if notification.is_terminal:
        raise NotificationStateError(
            f"Notification {notification.id} is already {notification.status.value}"
        )
    return dataclasses.replace(
        notification, status=NotificationStatus.failed, failure_reason=reason
    )


@dataclass
class DispatchReport:
    """Outcome of one dispatch tick.

    Attributes:
        examined: Due notifications picked up.
        sent:     Delivered and marked ``sent``.
        failed:   Marked ``failed`` (delivery error or timeout).
        aborted:  True if a storage error ended the tick early.
    """

    examined: int = 0
    sent: int = 0
    failed: int = 0
    aborted: bool = False
    failures: dict[UUID, str] = field(default_factory=dict)


class NotificationScheduler:
    """Create reminders and dispatch the due ones."""

    def __init__(
        self,
        notifications: NotificationStore,
        delivery: DeliveryService,
        clock: Clock,
        activity: ActivityLogStore | None = None,
        config: TrackingConfig | None = None,
    ) -> None:
        self._notifications = notifications
        self._delivery = delivery
        self._clock = clock
        self._activity = activity
        self._config = config or get_tracking_config()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_for_prediction(
        self,
        user_id: UUID,
        cycle_id: UUID | None,
        predicted_date: datetime,
        lead_hours: float,
        type: NotificationType = NotificationType.vest_onah,
        title: str = "Upcoming vest onah",
        message: str = "A vest onah begins soon.",
        hebrew_date: str | None = None,
    ) -> Notification:
        """Create a pending notification ``lead_hours`` before ``predicted_date``.

        Idempotent per ``(user_id, cycle_id, type, scheduled_for)``: when a
        pending or sent notification already exists for the tuple it is
        returned unchanged.
        """
        scheduled_for = predicted_date - timedelta(hours=lead_hours)
        candidate = new_notification(
            user_id=user_id,
            cycle_id=cycle_id,
            type=NotificationType(type),
            scheduled_for=scheduled_for,
            title=title,
            message=message,
            now=self._clock.now(),
            hebrew_date=hebrew_date,
        )
        stored, created = await self._notifications.insert_if_absent(candidate)
        if created:
            logger.info(
                "Scheduled %s notification %s for user %s at %s",
                stored.type.value, stored.id, user_id, scheduled_for.isoformat(),
            )
        return stored

    async def schedule_for_cycle(
        self,
        record: CycleRecord,
        predictions: Iterable[VesetPrediction],
        preferences: UserPreferences,
    ) -> list[Notification]:
        """Bring the cycle's pending reminders in line with its current state.

        Every reminder the cycle's stage and ``predictions`` call for is
        scheduled, skipping types the user has turned off and times already
        past.  Pending reminders of the cycle that are no longer called for
        (a stage the cycle has moved past, a vest onah that is no longer
        predicted) are deleted.
        """
        zone = preferences.zone
        at = preferences.reminder_time
        now = self._clock.now()
        lead = self._config.notifications.vest_lead_hours
        wanted: list[dict] = []

        def local(ts: datetime):
            return ts.astimezone(zone).date()

        if record.hefsek_tahara is None:
            niddah_days = self._config.clamp_niddah_days(preferences.minimum_niddah_days)
            day = local(record.period_start) + timedelta(days=niddah_days)
            wanted.append(dict(
                type=NotificationType.hefsek_tahara,
                when=datetime.combine(day, at, tzinfo=zone),
                lead=0,
                title="Hefsek Tahara Reminder",
                message="You may perform the hefsek tahara from today.",
            ))
        elif record.shiva_nekiyim_start is None:
            day = local(record.hefsek_tahara) + timedelta(days=1)
            wanted.append(dict(
                type=NotificationType.shiva_nekiyim_start,
                when=datetime.combine(day, at, tzinfo=zone),
                lead=0,
                title="Shiva Nekiyim Reminder",
                message="Today is the first of the seven clean days.",
            ))
        elif record.mikvah_date is None:
            first = local(record.shiva_nekiyim_start)
            for i in range(self._config.halachic.shiva_nekiyim_days):
                wanted.append(dict(
                    type=NotificationType.bedika_reminder,
                    when=datetime.combine(first + timedelta(days=i), at, tzinfo=zone),
                    lead=0,
                    title=f"Bedika Reminder (day {i + 1})",
                    message=f"Day {i + 1} of shiva nekiyim: remember today's bedikot.",
                ))
        else:
            wanted.append(dict(
                type=NotificationType.mikvah_night,
                when=record.mikvah_date,
                lead=0,
                title="Mikvah Night",
                message="Tonight is your scheduled mikvah night.",
            ))

        for p in predictions:
            wanted.append(dict(
                type=NotificationType.vest_onah,
                when=p.starts_at,
                lead=lead,
                title=f"Vest Onah: {p.label}",
                message=(
                    f"Your {p.label} onah begins "
                    f"{p.starts_at.strftime('%A %d %B %H:%M')} ({p.onah.value} onah)."
                ),
                hebrew_date=p.hebrew_date,
            ))

        wanted = [item for item in wanted if preferences.reminder_enabled(item["type"])]
        # Keys of everything still called for, including reminders already due
        keep = {
            (record.user_id, record.id, item["type"], item["when"] - timedelta(hours=item["lead"]))
            for item in wanted
        }

        scheduled: list[Notification] = []
        for item in wanted:
            if item["when"] - timedelta(hours=item["lead"]) < now:
                continue
            scheduled.append(
                await self.schedule_for_prediction(
                    record.user_id, record.id, item["when"], item["lead"],
                    type=item["type"], title=item["title"], message=item["message"],
                    hebrew_date=item.get("hebrew_date"),
                )
            )

        pending = await self._notifications.list_for_user(
            record.user_id, status=NotificationStatus.pending.value
        )
        stale = [n.id for n in pending if n.cycle_id == record.id and n.dedup_key not in keep]
        if stale:
            retired = await self._notifications.delete_pending(stale)
            logger.info("Retired %d stale reminder(s) for cycle %s", retired, record.id)
        return scheduled

    async def cancel_for_cycle(self, cycle_id: UUID) -> int:
        """Delete every pending reminder of a cycle, e.g. after it is deleted."""
        cancelled = await self._notifications.delete_pending_for_cycle(cycle_id)
        if cancelled:
            logger.info("Cancelled %d pending reminder(s) for cycle %s", cancelled, cycle_id)
        return cancelled

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def process_due(self, now: datetime | None = None) -> DispatchReport:
        """Deliver pending notifications due at ``now``.

        Each notification is delivered and persisted independently: a failed
        or timed-out delivery marks only that notification ``failed``.  A
        storage error ends the tick; the next tick picks up the remainder.
        """
        now = now or self._clock.now()
        cfg = self._config.notifications
        report = DispatchReport()

        try:
            due = await self._notifications.find_pending_notifications(now, cfg.batch_size)
        except StorageError as exc:
            logger.error("Dispatch tick aborted: could not load due notifications: %s", exc)
            report.aborted = True
            return report

        for notification in due:
            if notification.scheduled_for > now or notification.is_terminal:
                continue
            report.examined += 1
            reason: str | None = None
            try:
                await asyncio.wait_for(
                    self._delivery.send(notification), timeout=cfg.delivery_timeout_seconds
                )
            except asyncio.TimeoutError:
                reason = f"Delivery timed out after {cfg.delivery_timeout_seconds:g}s"
            except DeliveryFailure as exc:
                reason = str(exc)
            except StorageError as exc:
                # Left pending for the next tick
                logger.error(
                    "Dispatch tick aborted while delivering notification %s: %s",
                    notification.id, exc,
                )
                report.aborted = True
                break
            except Exception as exc:
                logger.exception("Unexpected error delivering notification %s", notification.id)
                reason = f"Unexpected delivery error: {exc}"

            updated = mark_sent(notification, now) if reason is None else mark_failed(notification, reason)
            try:
                await self._notifications.save(updated)
                if reason is None and self._activity is not None:
                    await self._activity.append(
                        new_activity_entry(
                            notification.user_id, ActivityAction.reminder_sent,
                            notification.id, now, {"type": notification.type.value},
                        )
                    )
            except StorageError as exc:
                logger.error(
                    "Dispatch tick aborted while saving notification %s: %s",
                    notification.id, exc,
                )
                report.aborted = True
                break

            if reason is None:
                report.sent += 1
            else:
                report.failed += 1
                report.failures[notification.id] = reason
                logger.warning(
                    "Notification %s for user %s failed: %s",
                    notification.id, notification.user_id, reason,
                )

        if report.examined:
            logger.info(
                "Dispatch tick complete: %d due, %d sent, %d failed%s",
                report.examined, report.sent, report.failed,
                " (aborted)" if report.aborted else "",
            )
        return report
