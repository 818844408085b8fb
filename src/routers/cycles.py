"""Endpoints for cycles, cycle events and veset predictions.

Handlers are thin: every write goes through ``CycleService``.  Tracking
errors are mapped to HTTP status codes by the handlers registered in
``src.main``.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter

from src.dependencies import CurrentUser, Tracking
from src.models.base import ErrorDetail
from src.models.cycles import (
    CycleCreate,
    CycleEventCreate,
    CycleEventRead,
    CycleRead,
    PredictionRead,
)

router = APIRouter(prefix="/cycles", tags=["cycles"])

_NOT_FOUND = {404: {"model": ErrorDetail}}
_WRITE_ERRORS = {
    400: {"model": ErrorDetail},
    404: {"model": ErrorDetail},
    409: {"model": ErrorDetail},
}


@router.get("", response_model=list[CycleRead])
async def list_cycles(user: CurrentUser, service: Tracking) -> Any:
    records = await service.list_cycles(user.user_id)
    return [CycleRead.model_validate(r) for r in records]


@router.post(
    "", response_model=CycleRead, status_code=201, responses={400: {"model": ErrorDetail}}
)
async def create_cycle(user: CurrentUser, service: Tracking, body: CycleCreate) -> Any:
    record = await service.create_cycle(
        user.user_id,
        body.period_start,
        notes=body.notes,
        private_notes=body.private_notes,
    )
    return CycleRead.model_validate(record)


# Declared before /{cycle_id} so "predictions" is not parsed as an id
@router.get("/predictions", response_model=list[PredictionRead])
async def get_predictions(user: CurrentUser, service: Tracking) -> Any:
    predictions = await service.predictions(user.user_id)
    return [PredictionRead.model_validate(p) for p in predictions]


@router.get("/{cycle_id}", response_model=CycleRead, responses=_NOT_FOUND)
async def get_cycle(cycle_id: uuid.UUID, user: CurrentUser, service: Tracking) -> Any:
    return CycleRead.model_validate(await service.get_cycle(user.user_id, cycle_id))


@router.post("/{cycle_id}/events", response_model=CycleEventRead, responses=_WRITE_ERRORS)
async def record_event(
    cycle_id: uuid.UUID, user: CurrentUser, service: Tracking, body: CycleEventCreate
) -> Any:
    result = await service.apply_event(user.user_id, cycle_id, body.event_type, body.timestamp)
    return CycleEventRead(cycle=CycleRead.model_validate(result.record), changed=result.changed)


@router.delete("/{cycle_id}", status_code=204, responses=_WRITE_ERRORS)
async def delete_cycle(cycle_id: uuid.UUID, user: CurrentUser, service: Tracking) -> None:
    await service.delete_cycle(user.user_id, cycle_id)
