"""Read-only listing of a user's scheduled reminders."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from src.dependencies import CurrentUser, Tracking
from src.models.cycles import NotificationRead
from src.tracking.records import NotificationStatus

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    user: CurrentUser,
    service: Tracking,
    status: NotificationStatus | None = Query(default=None),
) -> Any:
    items = await service.list_notifications(
        user.user_id, status=status.value if status else None
    )
    return [NotificationRead.model_validate(n) for n in items]
