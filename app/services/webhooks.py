"""
Payment processor webhooks.

Each event id is recorded in ``payment_events`` in the same transaction as
its effect, so a replayed event is a no-op.
"""
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.booking import Booking
from app.models.cancellation import Cancellation
from app.models.payment import Payment, PaymentEvent
from app.schemas.schemas import WebhookEvent
from app.services.cancellation import issue_refund, record_refund_completed, reprice_after_late_payment
from app.services.payment import PaymentGateway, PSPError, get_payment_for_booking, mark_payment_succeeded

logger = logging.getLogger(__name__)


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Always true when no secret is configured."""
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature)


async def _payment_for_event(db: AsyncSession, data: dict) -> Optional[Payment]:
    charge_ref = data.get("charge_ref") or data.get("id")
    if charge_ref:
        payment = await db.scalar(select(Payment).where(Payment.charge_ref == charge_ref))
        if payment is not None:
            return payment
    metadata = data.get("metadata") or {}
    key = data.get("idempotency_key") or metadata.get("idempotency_key")
    if key:
        payment = await db.scalar(select(Payment).where(Payment.idempotency_key == key))
        if payment is not None:
            return payment
    # A charge replaced after a price change keeps only its payment id
    if metadata.get("payment_id"):
        return await db.get(Payment, metadata["payment_id"])
    return None


def _is_superseded(payment: Payment, data: dict) -> bool:
    charge_ref = data.get("charge_ref") or data.get("id")
    key = data.get("idempotency_key") or (data.get("metadata") or {}).get("idempotency_key")
    if not charge_ref or charge_ref == payment.charge_ref:
        return False
    return key != payment.idempotency_key


async def _cancellation_for_event(db: AsyncSession, data: dict) -> Optional[Cancellation]:
    refund_ref = data.get("refund_ref") or data.get("id")
    if refund_ref:
        cancellation = await db.scalar(select(Cancellation).where(Cancellation.refund_ref == refund_ref))
        if cancellation is not None:
            return cancellation
    cancellation_id = (data.get("metadata") or {}).get("cancellation_id")
    if cancellation_id:
        return await db.get(Cancellation, cancellation_id)
    return None


async def _charge_succeeded(db: AsyncSession, payment: Payment) -> Optional[Cancellation]:
    """
    Record a successful charge. When the booking was cancelled before the
    money arrived, the cancellation is re-priced against the amount paid and
    returned if it now owes a refund.
    """
    booking = await db.get(Booking, payment.booking_id)
    if booking is None or booking.status != "CANCELLED":
        if payment.status != "SUCCEEDED":
            await mark_payment_succeeded(db, payment)
        return None

    if payment.status not in ("PENDING", "PROCESSING", "FAILED", "CANCELLED"):
        return None
    payment.status = "SUCCEEDED"
    payment.failure_reason = None
    cancellation = await db.scalar(select(Cancellation).where(Cancellation.booking_id == booking.id))
    logger.warning("Charge %s succeeded after booking %s was cancelled", payment.charge_ref, booking.id)
    if cancellation is not None and reprice_after_late_payment(cancellation, booking, payment.amount):
        return cancellation
    return None


async def refund_superseded_charge(gateway: PaymentGateway, charge_ref: str, booking_id: str) -> Optional[dict]:
    """Refund, in full, a charge that was replaced by a newer one for the same booking."""
    try:
        refund = await gateway.create_refund(
            charge_ref,
            None,
            f"refund_superseded_{charge_ref}",
            {"booking_id": booking_id, "superseded_charge": charge_ref},
        )
    except PSPError as e:
        logger.error("Refund of superseded charge %s for booking %s failed: %s", charge_ref, booking_id, e)
        return None
    logger.info("Refunded superseded charge %s for booking %s: %s", charge_ref, booking_id, refund["id"])
    return refund


async def handle_event(
    db: AsyncSession,
    event: WebhookEvent,
    now: Optional[datetime] = None,
    gateway: Optional[PaymentGateway] = None,
) -> tuple[str, Optional[str]]:
    """
    Apply one processor event. Returns the outcome (``processed``,
    ``duplicate``, ``ignored`` or ``unmatched``) and the affected booking id.

    Refunds owed because of the event are sent through ``gateway`` after the
    event is recorded. Without a gateway a re-priced cancellation is left
    pending for the refund retry task.
    """
    now = now or utcnow()
    seen = await db.scalar(select(PaymentEvent.id).where(PaymentEvent.event_id == event.id))
    if seen:
        logger.info("Webhook %s (%s) already processed", event.id, event.type)
        return "duplicate", None

    outcome = "processed"
    booking_id = None
    payment = None
    refund_due = None
    superseded_ref = None
    data = event.data
    if event.type in ("charge.succeeded", "charge.failed"):
        payment = await _payment_for_event(db, data)
        if payment is None:
            logger.error("Webhook %s: no payment for %s", event.id, data)
            outcome = "unmatched"
        elif _is_superseded(payment, data):
            booking_id = payment.booking_id
            if event.type == "charge.succeeded":
                superseded_ref = data.get("charge_ref") or data.get("id")
                logger.warning("Superseded charge %s for booking %s succeeded", superseded_ref, booking_id)
            else:
                outcome = "ignored"
        elif event.type == "charge.succeeded":
            booking_id = payment.booking_id
            refund_due = await _charge_succeeded(db, payment)
        elif payment.status in ("PENDING", "PROCESSING"):
            payment.status = "FAILED"
            payment.failure_reason = data.get("failure_message") or "Charge failed"
            logger.warning("Charge failed for booking %s: %s", payment.booking_id, payment.failure_reason)

    elif event.type in ("refund.completed", "refund.failed"):
        cancellation = await _cancellation_for_event(db, data)
        if cancellation is None and (data.get("metadata") or {}).get("superseded_charge"):
            outcome = "ignored"
        elif cancellation is None:
            logger.error("Webhook %s: no cancellation for %s", event.id, data)
            outcome = "unmatched"
        elif event.type == "refund.completed":
            booking_id = cancellation.booking_id
            refund_payment = await get_payment_for_booking(db, cancellation.booking_id)
            record_refund_completed(cancellation, refund_payment, now)
        elif cancellation.refund_status != "completed":
            cancellation.refund_status = "failed"
            logger.error("Refund failed for booking %s (ref=%s)", cancellation.booking_id, cancellation.refund_ref)
    else:
        outcome = "ignored"

    db.add(PaymentEvent(event_id=event.id, event_type=event.type))
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return "duplicate", None
    logger.info("Webhook %s (%s): %s", event.id, event.type, outcome)

    if superseded_ref:
        if gateway is None:
            logger.error("No gateway to refund superseded charge %s for booking %s", superseded_ref, booking_id)
        else:
            await refund_superseded_charge(gateway, superseded_ref, booking_id)
    if refund_due is not None and gateway is not None:
        await issue_refund(db, gateway, refund_due, payment, now)
    return outcome, booking_id
