"""Periodic retry sweep on an asyncio scheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from .dispatcher import RetrySweepResult, WebhookDispatcher

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "dealhook-retry-sweep"


class RetrySweeper:
    """Runs ``WebhookDispatcher.retry_due`` on a fixed interval.

    A tick that is still running when the next one is due is not started
    twice; missed ticks are coalesced into one.

    Example:
        ```python
        sweeper = RetrySweeper(dispatcher, interval_seconds=60)
        sweeper.start()  # inside a running event loop
        ...
        sweeper.stop()
        ```
    """

    def __init__(self, dispatcher: WebhookDispatcher, interval_seconds: float = 60.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._dispatcher = dispatcher
        self._interval = interval_seconds
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        """True while the interval job is scheduled."""
        return self._scheduler is not None and self._scheduler.running

    async def run_once(self) -> RetrySweepResult:
        """Run a single sweep now."""
        return await self._dispatcher.retry_due()

    def start(self) -> None:
        """Start the interval job. Requires a running event loop."""
        if self.running:
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self._interval,
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Retry sweeper started (every %ss)", self._interval)

    def stop(self) -> None:
        """Stop the interval job. In-flight sweeps finish on their own."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Retry sweeper stopped")
