"""Background sweep runner.

Runs the dispatch and retention sweeps on independent timers.  Each job has
its own run-lock: if a tick is still running when the next one comes due, the
new tick is skipped rather than run concurrently.

Intervals (from tracking_config.yaml):
    dispatch:   every 15 minutes
    retention:  daily
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from src.tracking.config_loader import TrackingConfig, get_tracking_config
from src.tracking.notifications import NotificationScheduler
from src.tracking.retention import RetentionSweeper
from src.tracking.storage.base import Clock

logger = logging.getLogger("mikvahcal.tracking.runner")


@dataclass
class SweepJob:
    """A named periodic job.

    Attributes:
        name:     Job name, used in logs and ``run_job``.
        interval: Seconds between tick starts.
        tick:     Coroutine function executed on each tick.
        lock:     Held while a tick runs.
    """

    name: str
    interval: float
    tick: Callable[[], Coroutine[Any, Any, Any]]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    runs: int = 0
    skipped: int = 0


class SweepRunner:
    """Own the periodic sweeps and their background tasks.

    Usage::

        runner = SweepRunner(scheduler, sweeper, clock)
        runner.start()
        ...
        await runner.stop()
    """

    def __init__(
        self,
        scheduler: NotificationScheduler,
        sweeper: RetentionSweeper,
        clock: Clock,
        config: TrackingConfig | None = None,
    ) -> None:
        cfg = config or get_tracking_config()
        self._clock = clock
        self._jobs: dict[str, SweepJob] = {
            "dispatch": SweepJob(
                "dispatch",
                cfg.sweeps.dispatch_interval_seconds,
                lambda: scheduler.process_due(self._clock.now()),
            ),
            "retention": SweepJob(
                "retention",
                cfg.sweeps.retention_interval_seconds,
                lambda: sweeper.purge_expired(self._clock.now()),
            ),
        }
        self._tasks: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()

    @property
    def jobs(self) -> dict[str, SweepJob]:
        return self._jobs

    async def run_job(self, name: str) -> Any:
        """Run one tick of ``name`` unless the previous tick still holds the lock.

        Returns the tick's result, or None when the tick was skipped or raised.
        """
        job = self._jobs[name]
        if job.lock.locked():
            job.skipped += 1
            logger.info("Skipping %s tick: previous tick still running", name)
            return None
        async with job.lock:
            job.runs += 1
            try:
                return await job.tick()
            except Exception:
                logger.exception("%s tick failed", name)
                return None

    async def _loop(self, job: SweepJob) -> None:
        logger.info("Starting %s sweep every %ss", job.name, job.interval)
        while True:
            # Ticks run as their own tasks so a slow tick cannot delay the timer
            tick = asyncio.create_task(self.run_job(job.name))
            self._inflight.add(tick)
            tick.add_done_callback(self._inflight.discard)
            await asyncio.sleep(job.interval)

    def start(self) -> None:
        """Start one background task per job. Requires a running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(job), name=f"sweep-{job.name}")
            for job in self._jobs.values()
        ]

    async def stop(self) -> None:
        """Cancel the timers and wait for in-flight ticks to finish."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Sweep runner stopped")
