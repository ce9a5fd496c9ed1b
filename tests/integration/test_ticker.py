"""Tests for the periodic payment ticker"""

import asyncio
from datetime import datetime, timezone

from bnpl_scheduler.domain.clock import FixedClock
from bnpl_scheduler.domain.models import BatchResult
from bnpl_scheduler.services.ticker import PaymentTicker


class RecordingProcessor:
    def __init__(self):
        self.runs = []

    async def process_due_payments(self, options=None):
        self.runs.append(options)
        return BatchResult()


class RecordingDispatcher:
    def __init__(self):
        self.rounds = 0

    async def dispatch_pending(self, limit=100):
        self.rounds += 1


def make_ticker(test_settings, start):
    test_settings.daily_run_hour_utc = 9
    test_settings.retry_sweep_interval_seconds = 3600
    processor = RecordingProcessor()
    dispatcher = RecordingDispatcher()
    clock = FixedClock(start)
    return PaymentTicker(processor, dispatcher, clock, test_settings), processor, dispatcher, clock


async def test_daily_run_then_hourly_sweeps(test_settings):
    ticker, processor, dispatcher, clock = make_ticker(test_settings, datetime(2024, 1, 15, 9, 5, tzinfo=timezone.utc))

    await ticker.tick()
    assert [o.run_type for o in processor.runs] == ["daily"]
    assert processor.runs[0].retries_only is False

    # Same hour: nothing to do
    clock.advance(minutes=30)
    assert await ticker.tick() is None

    clock.advance(minutes=30)
    await ticker.tick()
    assert processor.runs[-1].run_type == "retry_sweep"
    assert processor.runs[-1].retries_only is True

    # Next day's daily pass takes precedence over the sweep
    clock.set(datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc))
    await ticker.tick()
    assert processor.runs[-1].run_type == "daily"
    assert len(processor.runs) == 3
    assert dispatcher.rounds == 3


async def test_sweeps_before_daily_hour(test_settings):
    ticker, processor, _, clock = make_ticker(test_settings, datetime(2024, 1, 15, 3, 0, tzinfo=timezone.utc))

    await ticker.tick()
    clock.advance(hours=1)
    await ticker.tick()

    assert [o.run_type for o in processor.runs] == ["retry_sweep", "retry_sweep"]


async def test_start_and_stop(test_settings):
    test_settings.ticker_poll_seconds = 0.01
    ticker, processor, _, _ = make_ticker(test_settings, datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc))

    ticker.start()
    assert ticker.running
    await asyncio.sleep(0.05)
    await ticker.stop()

    assert not ticker.running
    assert processor.runs[0].run_type == "daily"


async def test_failed_run_does_not_stop_loop(test_settings):
    test_settings.ticker_poll_seconds = 0.01
    ticker, processor, _, clock = make_ticker(test_settings, datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc))
    calls = {"count": 0}

    async def failing(options=None):
        calls["count"] += 1
        clock.advance(hours=1)
        raise RuntimeError("database unavailable")

    processor.process_due_payments = failing

    ticker.start()
    await asyncio.sleep(0.05)
    await ticker.stop()

    assert calls["count"] >= 2
