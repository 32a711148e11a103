"""
Periodic background tasks run inside the API process.

Each tick opens its own session. Errors are logged and the loop carries on
at the next interval. Every job is safe to run alongside request handling
and on several instances at once.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from app.config import get_settings
from app.database import AsyncSessionLocal
from app.exceptions import PricingConfigError
from app.services import booking as booking_service
from app.services import cancellation as cancellation_service
from app.services import notifications
from app.services import pricing_config
from app.services.notifications import NotificationSender
from app.services.payment import PaymentGateway
from app.services.pricing import PricingEngine
from app.services.quotes import QuoteStore

logger = logging.getLogger(__name__)
settings = get_settings()

Job = Callable[[], Awaitable[object]]


class Scheduler:
    def __init__(self) -> None:
        self._jobs: list[tuple[str, float, Job]] = []
        self._tasks: list[asyncio.Task] = []

    def add(self, name: str, interval_seconds: float, job: Job) -> None:
        self._jobs.append((name, interval_seconds, job))

    @staticmethod
    async def _loop(name: str, interval: float, job: Job) -> None:
        while True:
            try:
                result = await job()
                logger.debug("Task %s finished: %s", name, result)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background task %s failed", name)
            await asyncio.sleep(interval)

    def start(self) -> None:
        for name, interval, job in self._jobs:
            self._tasks.append(asyncio.create_task(self._loop(name, interval, job), name=name))
        logger.info("Started %d background tasks", len(self._tasks))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def sweep_quotes() -> int:
    async with AsyncSessionLocal() as db:
        return await QuoteStore(db).sweep_expired()


async def archive_bookings() -> int:
    async with AsyncSessionLocal() as db:
        return await booking_service.archive_completed(db)


async def queue_reminders() -> int:
    async with AsyncSessionLocal() as db:
        return await notifications.schedule_pickup_reminders(db)


def build_scheduler(engine: PricingEngine, gateway: PaymentGateway, sender: NotificationSender) -> Scheduler:
    async def dispatch_notifications() -> int:
        async with AsyncSessionLocal() as db:
            return await notifications.dispatch_pending(db, sender)

    async def retry_refunds() -> int:
        async with AsyncSessionLocal() as db:
            return await cancellation_service.retry_failed_refunds(db, gateway)

    async def refresh_pricing() -> bool:
        async with AsyncSessionLocal() as db:
            try:
                return await pricing_config.refresh_engine(db, engine)
            except PricingConfigError as e:
                logger.error("Keeping pricing config %s: %s", engine.config.version, e.message)
                return False

    scheduler = Scheduler()
    scheduler.add("quote-sweep", settings.quote_sweep_interval_seconds, sweep_quotes)
    scheduler.add("notification-dispatch", settings.notification_dispatch_interval_seconds, dispatch_notifications)
    scheduler.add("pickup-reminders", settings.reminder_scan_interval_seconds, queue_reminders)
    scheduler.add("refund-retry", settings.refund_retry_interval_seconds, retry_refunds)
    scheduler.add("pricing-refresh", settings.pricing_refresh_interval_seconds, refresh_pricing)
    scheduler.add("booking-archive", settings.archive_interval_seconds, archive_bookings)
    return scheduler
