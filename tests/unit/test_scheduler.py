"""
Unit tests for the background task runner.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from app.services.scheduler import Scheduler, build_scheduler


class TestScheduler:
    @pytest.mark.asyncio
    async def test_task_survives_errors(self):
        calls = []
        done = asyncio.Event()

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database went away")
            if len(calls) >= 3:
                done.set()
            return len(calls)

        scheduler = Scheduler()
        scheduler.add("flaky", 0, flaky)
        scheduler.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        await scheduler.stop()
        assert len(calls) >= 3

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await Scheduler().stop()

    def test_registered_jobs(self):
        scheduler = build_scheduler(MagicMock(), AsyncMock(), AsyncMock())
        names = [name for name, _, _ in scheduler._jobs]
        assert names == [
            "quote-sweep", "notification-dispatch", "pickup-reminders",
            "refund-retry", "pricing-refresh", "booking-archive",
        ]
