from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from courier.services.scheduler import Scheduler, TickReport
from courier.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class ClockDriver:
    """Periodic tick source for the scheduler.

    Runs as an asyncio task inside the application's event loop. A failing
    tick is logged and the loop carries on with the next one.
    """

    def __init__(self, scheduler: Scheduler, interval_seconds: float) -> None:
        self._scheduler = scheduler
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self.last_report: TickReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Scheduler clock started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler clock stopped")

    async def run_once(self, now: datetime | None = None) -> TickReport:
        report = await self._scheduler.tick(now or utcnow())
        self.last_report = report
        return report

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self._interval)
