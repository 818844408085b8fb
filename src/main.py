"""MikvahCal API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import get_settings
from src.models.base import ErrorDetail
from src.routers import cycles, health, notifications
from src.services.database import close_pool, init_pool
from src.tracking.config_loader import get_tracking_config
from src.tracking.delivery import BrevoEmailDelivery
from src.tracking.errors import ConflictError, NotFoundError, ValidationError
from src.tracking.notifications import NotificationScheduler
from src.tracking.retention import RetentionSweeper
from src.tracking.runner import SweepRunner
from src.tracking.service import CycleService
from src.tracking.storage.base import SystemClock
from src.tracking.storage.postgres import (
    PostgresActivityLog,
    PostgresCycleStore,
    PostgresNotificationStore,
    PostgresProfileReader,
)

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("mikvahcal")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting MikvahCal API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    await init_pool(settings)

    config = get_tracking_config()
    clock = SystemClock()
    cycle_store = PostgresCycleStore()
    notification_store = PostgresNotificationStore()
    activity = PostgresActivityLog()
    profiles = PostgresProfileReader()
    delivery = BrevoEmailDelivery(
        api_key=settings.brevo_api_key,
        profiles=profiles,
        sender_email=settings.sender_email,
        sender_name=settings.sender_name,
        api_url=settings.brevo_api_url,
    )
    scheduler = NotificationScheduler(notification_store, delivery, clock, activity, config)
    app.state.cycle_service = CycleService(
        cycle_store, notification_store, activity, profiles, scheduler, clock, config
    )

    runner: SweepRunner | None = None
    if settings.sweeps_enabled:
        sweeper = RetentionSweeper(cycle_store, notification_store, activity, clock, config)
        runner = SweepRunner(scheduler, sweeper, clock, config)
        runner.start()
    app.state.sweep_runner = runner

    yield

    if runner is not None:
        await runner.stop()
    await close_pool()
    logger.info("MikvahCal API shut down")


# ---------- Error mapping ----------

async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=ErrorDetail(detail=exc.reason).model_dump())


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content=ErrorDetail(detail=str(exc)).model_dump())


async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
    logger.warning("Conflict on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=409,
        content=ErrorDetail(
            detail="The cycle was modified concurrently, please retry"
        ).model_dump(),
    )


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="MikvahCal API",
        description=(
            "Halachic cycle tracking: cycle events, veset predictions "
            "and reminders."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(ConflictError, _conflict)

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(cycles.router, prefix=v1_prefix)
    app.include_router(notifications.router, prefix=v1_prefix)

    return app


app = create_app()
