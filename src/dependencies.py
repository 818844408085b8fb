"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.tracking.service import CycleService


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context placed on the request by the auth layer."""

    user_id: uuid.UUID
    email: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The upstream authentication middleware sets ``request.state.auth`` before
    routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_cycle_service(request: Request) -> CycleService:
    """Return the service built by the app lifespan."""
    service: CycleService | None = getattr(request.app.state, "cycle_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Tracking service unavailable")
    return service


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
Tracking = Annotated[CycleService, Depends(get_cycle_service)]
AppSettings = Annotated[Settings, Depends(get_settings)]
