"""Health check endpoint: public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.dependencies import AppSettings
from src.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("mikvahcal.health")


def _sweep_status(request: Request) -> dict:
    runner = getattr(request.app.state, "sweep_runner", None)
    if runner is None:
        return {"enabled": False, "jobs": {}}
    return {
        "enabled": True,
        "jobs": {
            name: {"interval_seconds": job.interval, "runs": job.runs, "skipped": job.skipped}
            for name, job in runner.jobs.items()
        },
    }


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness check. Always 200 while the process is up.

    Reports database reachability and the per-job counters of the
    background sweeps.
    """
    try:
        async with get_pool().acquire() as conn:
            await conn.fetchval("SELECT 1")
        database = "connected"
    except Exception as exc:
        logger.warning("Health check DB query failed: %s", exc)
        database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "database": database,
        "sweeps": _sweep_status(request),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
