"""
Dispatch Poller — in-process periodic trigger for CheckinDispatcher.

Use this when nothing external (cron, a scheduler hitting the dispatch
endpoint) drives dispatch. Runs as a background task inside the FastAPI
lifespan when `dispatch.poll_interval_seconds` is positive.

    poller = DispatchPoller(dispatcher, poll_interval_s=300)
    await poller.start()
    ...
    await poller.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from checkins.dispatcher import CheckinDispatcher
from models.schemas import DispatchSummary

logger = structlog.get_logger()


class DispatchPoller:
    def __init__(
        self,
        dispatcher: CheckinDispatcher,
        poll_interval_s: int = 300,
        batch_size: int = None,
    ):
        self.dispatcher = dispatcher
        self.poll_interval_s = poll_interval_s
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.last_summary: Optional[DispatchSummary] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="dispatch_poller")
        logger.info("dispatch_poller_started", interval_s=self.poll_interval_s)

    async def stop(self) -> None:
        """Gracefully stop the poller."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("dispatch_poller_stopped", cycles=self.cycles)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dispatch_poll_cycle_error", error=str(e))

            await asyncio.sleep(self.poll_interval_s)

    async def poll_cycle(self) -> DispatchSummary:
        """Run one dispatch batch and remember its summary."""
        summary = await self.dispatcher.dispatch_due(limit=self.batch_size)
        self.cycles += 1
        self.last_summary = summary
        if summary.queued:
            logger.info("dispatch_poll_cycle", cycle=self.cycles, queued=summary.queued,
                        sent=summary.sent, failed=summary.failed, deferred=summary.deferred)
        return summary
