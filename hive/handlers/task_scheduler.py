"""Task Scheduler -- fires due schedules every tick.

Runs a periodic check loop that:
1. Fills next_run_at for active cron schedules on startup
2. Every schedule_check_interval seconds, fires schedules whose next_run_at <= now
3. Logs in-flight skips at debug level; they are retried on a later tick
"""

from __future__ import annotations

import asyncio
import logging

from hive.config import Settings
from hive.core.hive import Hive
from hive.core.schemas import FireResult

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Background scheduler that fires due schedules.

    Runs a single asyncio task that wakes every schedule_check_interval
    seconds. Multiple processes against one database would fire twice;
    run exactly one scheduler per deployment.
    """

    def __init__(self, hive: Hive, settings: Settings) -> None:
        self._hive = hive
        self._settings = settings
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        """Compute missing next-run times and start the check loop."""
        changed = await self._hive.schedules.compute_next_runs()
        if changed:
            logger.info("Computed next run for %d schedule(s)", changed)
        self._running = True
        self._task = asyncio.create_task(self._check_loop(), name="task-scheduler")
        logger.info(
            "Task scheduler started (check_interval=%ds)",
            self._settings.schedule_check_interval,
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Task scheduler stopped")

    # ------------------------------------------------------------------
    # Check loop
    # ------------------------------------------------------------------

    async def _check_loop(self) -> None:
        """Periodic loop: sleep -> fire due schedules -> repeat."""
        while self._running:
            try:
                await asyncio.sleep(self._settings.schedule_check_interval)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Schedule check failed")

    async def tick(self) -> list[FireResult]:
        results = await self._hive.schedules.fire_due_schedules()
        fired = sum(1 for r in results if r.queued)
        for result in results:
            if not result.queued:
                logger.debug("Schedule %s not fired: %s", result.schedule_id, result.reason)
        if fired:
            logger.info("Fired %d due schedule(s)", fired)
        return results
