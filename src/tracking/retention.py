"""Retention sweeper.

Hard-deletes data that has outlived its retention horizon:

    live cycles            created more than ``retention_period`` ago (730 days)
    soft-deleted cycles    deleted more than the grace period ago (30 days)
    terminal notifications scheduled more than 30 days ago
    activity log entries   older than 90 days

Every pass is idempotent: running it twice with the same ``now`` deletes
nothing the second time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.tracking.config_loader import TrackingConfig, get_tracking_config
from src.tracking.storage.base import (
    ActivityLogStore,
    Clock,
    CycleFilter,
    CycleStore,
    NotificationStore,
)

logger = logging.getLogger("mikvahcal.tracking.retention")


@dataclass
class RetentionReport:
    """Rows removed by one retention pass."""

    cutoff: datetime
    cycles_expired: int = 0
    cycles_soft_deleted: int = 0
    notifications: int = 0
    activity_entries: int = 0

    @property
    def total(self) -> int:
        return (
            self.cycles_expired
            + self.cycles_soft_deleted
            + self.notifications
            + self.activity_entries
        )


class RetentionSweeper:
    """Purge expired cycles, notifications and activity entries.

    Usage::

        sweeper = RetentionSweeper(cycle_store, notification_store, activity_log, clock)
        report = await sweeper.purge_expired()
    """

    def __init__(
        self,
        cycles: CycleStore,
        notifications: NotificationStore | None,
        activity: ActivityLogStore | None,
        clock: Clock,
        config: TrackingConfig | None = None,
    ) -> None:
        self._cycles = cycles
        self._notifications = notifications
        self._activity = activity
        self._clock = clock
        self._config = config or get_tracking_config()

    async def purge_expired(
        self,
        now: datetime | None = None,
        retention_period: timedelta | None = None,
    ) -> RetentionReport:
        """Run one retention pass.

        Args:
            now:              Reference instant (defaults to the clock).
            retention_period: Age after which live cycles are removed
                              (defaults to ``retention.cycle_retention_days``).

        Raises:
            StorageError: A store failed; rows deleted before the failure stay deleted.
        """
        now = now or self._clock.now()
        r = self._config.retention
        period = retention_period if retention_period is not None else r.cycle_retention
        cutoff = now - period
        report = RetentionReport(cutoff=cutoff)

        report.cycles_expired = await self._cycles.delete_many(
            CycleFilter(is_deleted=False, created_before=cutoff)
        )
        logger.info(
            "Purged %d cycle(s) created before %s", report.cycles_expired, cutoff.isoformat()
        )

        grace_cutoff = now - timedelta(days=r.soft_delete_grace_days)
        report.cycles_soft_deleted = await self._cycles.delete_many(
            CycleFilter(is_deleted=True, deleted_before=grace_cutoff)
        )

        if self._notifications is not None:
            report.notifications = await self._notifications.delete_terminal_before(
                now - timedelta(days=r.notification_retention_days)
            )
        if self._activity is not None:
            report.activity_entries = await self._activity.delete_before(
                now - timedelta(days=r.activity_log_retention_days)
            )

        logger.info(
            "Retention pass complete: %d soft-deleted cycle(s), %d notification(s), "
            "%d activity entr(ies) removed",
            report.cycles_soft_deleted, report.notifications, report.activity_entries,
        )
        return report
