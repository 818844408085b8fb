"""asyncpg-backed stores. Table definitions live in ``schema.sql``.

Driver errors are re-raised as ``StorageError`` so the sweeps can end a tick
cleanly without knowing about asyncpg.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Collection
from uuid import UUID

import asyncpg

from src.services.database import get_connection
from src.tracking.config_loader import get_tracking_config, parse_clock_time
from src.tracking.errors import ConflictError, NotFoundError, StorageError
from src.tracking.records import (
    ActivityAction,
    ActivityLogEntry,
    CycleRecord,
    Notification,
    NotificationStatus,
    NotificationType,
    UserPreferences,
)
from src.tracking.storage.base import CycleFilter

logger = logging.getLogger("mikvahcal.tracking.storage")


@asynccontextmanager
async def _connection(user_id: UUID | None = None) -> AsyncGenerator[asyncpg.Connection, None]:
    try:
        async with get_connection(user_id=user_id) as conn:
            yield conn
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise StorageError(f"Database error: {exc}") from exc


def _record_to_cycle(row: asyncpg.Record) -> CycleRecord:
    return CycleRecord(
        id=row["id"],
        user_id=row["user_id"],
        period_start=row["period_start"],
        timezone=row["timezone"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        hefsek_tahara=row["hefsek_tahara"],
        shiva_nekiyim_start=row["shiva_nekiyim_start"],
        mikvah_date=row["mikvah_date"],
        notes=row["notes"],
        private_notes=row["private_notes"],
        is_deleted=row["is_deleted"],
        deleted_at=row["deleted_at"],
        version=row["version"],
    )


def _record_to_notification(row: asyncpg.Record) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        cycle_id=row["cycle_id"],
        type=NotificationType(row["type"]),
        title=row["title"],
        message=row["message"],
        scheduled_for=row["scheduled_for"],
        created_at=row["created_at"],
        status=NotificationStatus(row["status"]),
        hebrew_date=row["hebrew_date"],
        failure_reason=row["failure_reason"],
        sent_at=row["sent_at"],
    )


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------


class PostgresCycleStore:
    async def find_cycles_by_user(self, user_id: UUID) -> list[CycleRecord]:
        async with _connection(user_id) as conn:
            rows = await conn.fetch(
                "SELECT * FROM cycles WHERE user_id = $1 ORDER BY period_start", user_id
            )
        return [_record_to_cycle(r) for r in rows]

    async def get_cycle(self, cycle_id: UUID) -> CycleRecord | None:
        async with _connection() as conn:
            row = await conn.fetchrow("SELECT * FROM cycles WHERE id = $1", cycle_id)
        return _record_to_cycle(row) if row else None

    async def insert_cycle(self, record: CycleRecord) -> CycleRecord:
        async with _connection(record.user_id) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO cycles (id, user_id, period_start, timezone, hefsek_tahara,
                                    shiva_nekiyim_start, mikvah_date, notes, private_notes,
                                    is_deleted, deleted_at, version, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                RETURNING *
                """,
                record.id, record.user_id, record.period_start, record.timezone,
                record.hefsek_tahara, record.shiva_nekiyim_start, record.mikvah_date,
                record.notes, record.private_notes, record.is_deleted, record.deleted_at,
                record.version, record.created_at, record.updated_at,
            )
        return _record_to_cycle(row)

    async def save(self, record: CycleRecord, expected_version: int) -> CycleRecord:
        async with _connection(record.user_id) as conn:
            row = await conn.fetchrow(
                """
                UPDATE cycles
                   SET hefsek_tahara = $3, shiva_nekiyim_start = $4, mikvah_date = $5,
                       notes = $6, private_notes = $7, is_deleted = $8, deleted_at = $9,
                       updated_at = $10, version = version + 1
                 WHERE id = $1 AND version = $2
                RETURNING *
                """,
                record.id, expected_version, record.hefsek_tahara, record.shiva_nekiyim_start,
                record.mikvah_date, record.notes, record.private_notes, record.is_deleted,
                record.deleted_at, record.updated_at,
            )
            if row is None:
                exists = await conn.fetchval("SELECT version FROM cycles WHERE id = $1", record.id)
        if row is None:
            if exists is None:
                raise NotFoundError(f"Cycle {record.id} not found")
            raise ConflictError(
                f"Cycle {record.id} was modified concurrently "
                f"(expected v{expected_version}, found v{exists})"
            )
        return _record_to_cycle(row)

    async def delete_many(self, where: CycleFilter) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if where.is_deleted is not None:
            params.append(where.is_deleted)
            clauses.append(f"is_deleted = ${len(params)}")
        if where.created_before is not None:
            params.append(where.created_before)
            clauses.append(f"created_at < ${len(params)}")
        if where.deleted_before is not None:
            params.append(where.deleted_before)
            clauses.append(f"deleted_at < ${len(params)}")
        if not clauses:
            raise ValueError("Refusing to delete cycles without a filter")
        async with _connection() as conn:
            status = await conn.execute(
                f"DELETE FROM cycles WHERE {' AND '.join(clauses)}", *params
            )
        # asyncpg returns e.g. "DELETE 12"
        return int(status.split()[-1])


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class PostgresNotificationStore:
    async def insert_if_absent(self, notification: Notification) -> tuple[Notification, bool]:
        n = notification
        async with _connection(n.user_id) as conn:
            # Partial unique index notifications_dedup_idx excludes failed rows
            row = await conn.fetchrow(
                """
                INSERT INTO notifications (id, user_id, cycle_id, type, title, message,
                                           hebrew_date, scheduled_for, status, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT DO NOTHING
                RETURNING *
                """,
                n.id, n.user_id, n.cycle_id, n.type.value, n.title, n.message,
                n.hebrew_date, n.scheduled_for, n.status.value, n.created_at,
            )
            if row is not None:
                return _record_to_notification(row), True
            existing = await conn.fetchrow(
                """
                SELECT * FROM notifications
                 WHERE user_id = $1 AND cycle_id IS NOT DISTINCT FROM $2
                   AND type = $3 AND scheduled_for = $4 AND status <> 'failed'
                """,
                n.user_id, n.cycle_id, n.type.value, n.scheduled_for,
            )
        if existing is None:
            raise StorageError(f"Notification insert for {n.dedup_key} neither stored nor found")
        return _record_to_notification(existing), False

    async def find_pending_notifications(self, now: datetime, limit: int) -> list[Notification]:
        async with _connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM notifications
                 WHERE status = 'pending' AND scheduled_for <= $1
                 ORDER BY scheduled_for
                 LIMIT $2
                """,
                now, limit,
            )
        return [_record_to_notification(r) for r in rows]

    async def save(self, notification: Notification) -> Notification:
        n = notification
        async with _connection(n.user_id) as conn:
            row = await conn.fetchrow(
                """
                UPDATE notifications
                   SET status = $2, failure_reason = $3, sent_at = $4
                 WHERE id = $1
                RETURNING *
                """,
                n.id, n.status.value, n.failure_reason, n.sent_at,
            )
        if row is None:
            raise NotFoundError(f"Notification {n.id} not found")
        return _record_to_notification(row)

    async def list_for_user(
        self, user_id: UUID, status: str | None = None
    ) -> list[Notification]:
        async with _connection(user_id) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM notifications
                 WHERE user_id = $1 AND ($2::text IS NULL OR status = $2)
                 ORDER BY scheduled_for
                """,
                user_id, status,
            )
        return [_record_to_notification(r) for r in rows]

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with _connection() as conn:
            status = await conn.execute(
                "DELETE FROM notifications WHERE status <> 'pending' AND scheduled_for < $1",
                cutoff,
            )
        return int(status.split()[-1])

    async def delete_pending(self, ids: Collection[UUID]) -> int:
        if not ids:
            return 0
        async with _connection() as conn:
            status = await conn.execute(
                "DELETE FROM notifications WHERE id = ANY($1::uuid[]) AND status = 'pending'",
                list(ids),
            )
        return int(status.split()[-1])

    async def delete_pending_for_cycle(self, cycle_id: UUID) -> int:
        async with _connection() as conn:
            status = await conn.execute(
                "DELETE FROM notifications WHERE cycle_id = $1 AND status = 'pending'",
                cycle_id,
            )
        return int(status.split()[-1])


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


class PostgresActivityLog:
    async def append(self, entry: ActivityLogEntry) -> None:
        async with _connection(entry.user_id) as conn:
            await conn.execute(
                """
                INSERT INTO activity_logs (id, user_id, action, entity_id, changes, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                entry.id, entry.user_id, entry.action.value, entry.entity_id,
                entry.changes, entry.created_at,
            )

    async def list_for_user(self, user_id: UUID) -> list[ActivityLogEntry]:
        async with _connection(user_id) as conn:
            rows = await conn.fetch(
                "SELECT * FROM activity_logs WHERE user_id = $1 ORDER BY created_at", user_id
            )
        return [
            ActivityLogEntry(
                id=r["id"],
                user_id=r["user_id"],
                action=ActivityAction(r["action"]),
                entity_id=r["entity_id"],
                created_at=r["created_at"],
                changes=r["changes"] or {},
            )
            for r in rows
        ]

    async def delete_before(self, cutoff: datetime) -> int:
        async with _connection() as conn:
            status = await conn.execute(
                "DELETE FROM activity_logs WHERE created_at < $1", cutoff
            )
        return int(status.split()[-1])


# ---------------------------------------------------------------------------
# Profiles (read-only)
# ---------------------------------------------------------------------------


class PostgresProfileReader:
    async def get_preferences(self, user_id: UUID) -> UserPreferences:
        async with _connection(user_id) as conn:
            row = await conn.fetchrow("SELECT * FROM profiles WHERE user_id = $1", user_id)
        if row is None:
            raise NotFoundError(f"User {user_id} not found")
        config = get_tracking_config()
        reminder_time = row["reminder_time"]
        return UserPreferences(
            timezone=row["timezone"],
            ohr_zaruah=row["ohr_zaruah"],
            kreisi_upleisi=row["kreisi_upleisi"],
            chasam_sofer=row["chasam_sofer"],
            minimum_niddah_days=config.clamp_niddah_days(row["minimum_niddah_days"]),
            notifications_enabled=row["notifications_enabled"],
            hefsek_tahara_reminder=row["hefsek_tahara_reminder"],
            shiva_nekiyim_reminder=row["shiva_nekiyim_reminder"],
            mikvah_reminder=row["mikvah_reminder"],
            vest_onot_reminder=row["vest_onot_reminder"],
            reminder_time=(
                parse_clock_time(reminder_time)
                if reminder_time is not None
                else config.notifications.default_reminder_time
            ),
        )

    async def get_contact_email(self, user_id: UUID) -> str | None:
        async with _connection(user_id) as conn:
            return await conn.fetchval("SELECT email FROM profiles WHERE user_id = $1", user_id)
