"""Periodic driver: daily due-payment pass plus hourly retry sweep"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Optional

from bnpl_scheduler.config import Settings, settings as default_settings
from bnpl_scheduler.domain.clock import Clock, SystemClock
from bnpl_scheduler.domain.models import BatchResult
from bnpl_scheduler.services.batch import BatchProcessor, ProcessingOptions
from bnpl_scheduler.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)


class PaymentTicker:
    """
    Drives the batch processor from a single asyncio task.

    tick() runs the full pass once per UTC day at or after daily_run_hour_utc,
    otherwise a retries-only sweep when retry_sweep_interval_seconds elapsed.
    stop() lets an in-flight batch finish.
    """

    def __init__(
        self,
        processor: BatchProcessor,
        dispatcher: NotificationDispatcher | None = None,
        clock: Clock | None = None,
        config: Settings | None = None,
    ):
        self.processor = processor
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self._last_daily_run: Optional[date] = None
        self._last_sweep_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _daily_due(self, now: datetime) -> bool:
        return now.hour >= self.config.daily_run_hour_utc and self._last_daily_run != now.date()

    def _sweep_due(self, now: datetime) -> bool:
        if self._last_sweep_at is None:
            return True
        return now - self._last_sweep_at >= timedelta(seconds=self.config.retry_sweep_interval_seconds)

    async def tick(self) -> Optional[BatchResult]:
        now = self.clock.now()

        if self._daily_due(now):
            self._last_daily_run = now.date()
            self._last_sweep_at = now
            options = ProcessingOptions.from_settings(self.config, run_type="daily")
        elif self._sweep_due(now):
            self._last_sweep_at = now
            options = ProcessingOptions.from_settings(self.config, run_type="retry_sweep", retries_only=True)
        else:
            return None

        result = await self.processor.process_due_payments(options)
        if self.dispatcher is not None:
            await self.dispatcher.dispatch_pending()
        return result

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Payment ticker started", extra={"poll_seconds": self.config.ticker_poll_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Payment ticker stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Payment ticker run failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.ticker_poll_seconds)
            except asyncio.TimeoutError:
                pass
