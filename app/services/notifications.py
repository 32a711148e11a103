"""
Notification outbox.

State changes enqueue a NotificationJob in their own transaction; a worker
delivers pending jobs with exponential backoff. Delivery failure never
affects the booking that produced the job.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.models.booking import Booking
from app.models.notification import NotificationJob

logger = logging.getLogger(__name__)
settings = get_settings()


class NotificationSender(ABC):
    @abstractmethod
    async def send(self, job: NotificationJob) -> None:
        """Deliver one job; raise on failure."""


class LoggingNotificationSender(NotificationSender):
    """Writes the notification to the log instead of an email/SMS provider."""

    async def send(self, job: NotificationJob) -> None:
        logger.info(
            "Notification %s via %s for booking %s: %s",
            job.kind, job.channel, job.booking_id, job.payload,
        )


def enqueue(
    db: AsyncSession,
    booking_id: str,
    kind: str,
    payload: Optional[dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
    channel: str = "email",
) -> NotificationJob:
    """Add a job to the caller's session; it commits with the caller's change."""
    job = NotificationJob(
        booking_id=booking_id,
        kind=kind,
        channel=channel,
        dedupe_key=dedupe_key or f"{kind}:{booking_id}",
        payload=payload or {},
        next_attempt_at=utcnow(),
    )
    db.add(job)
    return job


def _backoff(attempts: int) -> timedelta:
    return timedelta(seconds=settings.notification_backoff_seconds * 2 ** (attempts - 1))


async def dispatch_pending(
    db: AsyncSession,
    sender: NotificationSender,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> int:
    """Deliver due jobs. Returns the number sent."""
    now = now or utcnow()
    result = await db.execute(
        select(NotificationJob)
        .where(NotificationJob.status == "pending", NotificationJob.next_attempt_at <= now)
        .order_by(NotificationJob.next_attempt_at)
        .limit(batch_size or settings.notification_batch_size)
        .with_for_update(skip_locked=True)
    )
    sent = 0
    for job in result.scalars().all():
        try:
            await sender.send(job)
        except Exception as exc:
            job.attempts += 1
            job.last_error = str(exc)
            if job.attempts >= settings.notification_max_attempts:
                job.status = "failed"
                logger.error("Notification %s gave up after %d attempts: %s", job.id, job.attempts, exc)
            else:
                job.next_attempt_at = now + _backoff(job.attempts)
                logger.warning("Notification %s failed (attempt %d): %s", job.id, job.attempts, exc)
            continue
        job.attempts += 1
        job.status = "sent"
        job.sent_at = now
        sent += 1
    await db.commit()
    return sent


async def schedule_pickup_reminders(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Enqueue one reminder per CONFIRMED booking whose pickup is within the lead
    window. The ``pickup_reminder:{booking_id}`` dedupe key makes rescans and
    concurrent scanners harmless.
    """
    now = now or utcnow()
    horizon = now + timedelta(hours=settings.reminder_lead_hours)
    result = await db.execute(
        select(Booking.id, Booking.scheduled_at).where(
            Booking.status == "CONFIRMED",
            Booking.scheduled_at > now,
            Booking.scheduled_at <= horizon,
        )
    )
    candidates = result.all()

    created = 0
    for booking_id, scheduled_at in candidates:
        key = f"pickup_reminder:{booking_id}"
        if await db.scalar(select(NotificationJob.id).where(NotificationJob.dedupe_key == key)):
            continue
        enqueue(db, booking_id, "pickup_reminder", {"scheduled_at": scheduled_at.isoformat()},
                dedupe_key=key, channel="sms")
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            continue
        created += 1
    if created:
        logger.info("Enqueued %d pickup reminders", created)
    return created
