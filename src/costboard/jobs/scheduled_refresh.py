"""
Scheduled Refresh Job

Re-runs the refresh orchestrator on a fixed interval inside the API process,
and can be run once from the command line for cron-style scheduling.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..services.refresh import RefreshOrchestrator, RefreshReport

logger = logging.getLogger(__name__)


class ScheduledRefresh:
    """Background task calling ``orchestrator.refresh()`` every interval."""

    def __init__(
        self,
        orchestrator: RefreshOrchestrator,
        interval_minutes: float,
        on_complete: Callable[[RefreshReport], Awaitable[None]] | None = None,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = float(interval_minutes) * 60
        self.on_complete = on_complete
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> RefreshReport:
        report = await self.orchestrator.refresh()
        if self.on_complete is not None:
            await self.on_complete(report)
        return report

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Scheduled refresh failed: {e}")

    def start(self):
        if self.interval_seconds <= 0:
            logger.info("Scheduled refresh disabled (interval 0)")
            return
        if not self.running:
            logger.info(f"⏰ Scheduled refresh every {self.interval_seconds / 60:g} minutes")
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
