"""
Cancellation policy and refunds.

The booking is cancelled and committed first; the refund is issued
afterwards. A refund failure is recorded on the Cancellation row and picked
up by the retry task, it never reverts the cancellation.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.exceptions import NotFoundError, StateError
from app.models.booking import Booking
from app.models.cancellation import Cancellation
from app.models.payment import Payment
from app.schemas.schemas import CancellationRequest
from app.services.booking import get_booking, release_driver, transition
from app.services.notifications import enqueue
from app.services.payment import PaymentGateway, PSPError, get_payment_for_booking, void_open_charge
from app.services.pricing import ZERO, money

logger = logging.getLogger(__name__)
settings = get_settings()

FULL_REFUND_HOURS = 24
PARTIAL_REFUND_HOURS = 2
PARTIAL_REFUND_PERCENTAGE = 50
STANDARD_FEE = Decimal("10.00")
LAST_MINUTE_FEE = Decimal("25.00")
TRIP_PROTECTION_FEE = Decimal("5.00")
EMERGENCY_REASONS = frozenset({"medical_emergency", "weather", "vehicle_breakdown"})


@dataclass(frozen=True)
class RefundDecision:
    refund_percentage: int
    cancellation_fee: Decimal
    refund_amount: Decimal
    trip_protection_applied: bool = False


def calculate_refund(
    paid_amount: Decimal,
    scheduled_at: datetime,
    now: datetime,
    reason: Optional[str] = None,
    trip_protection: bool = False,
) -> RefundDecision:
    """Apply the cancellation policy to what the customer actually paid."""
    protected = False
    if reason in EMERGENCY_REASONS:
        percentage, fee = 100, ZERO
    elif trip_protection:
        percentage, fee, protected = 100, TRIP_PROTECTION_FEE, True
    else:
        until_pickup = scheduled_at - now
        if until_pickup >= timedelta(hours=FULL_REFUND_HOURS):
            percentage, fee = 100, STANDARD_FEE
        elif until_pickup >= timedelta(hours=PARTIAL_REFUND_HOURS):
            percentage, fee = PARTIAL_REFUND_PERCENTAGE, STANDARD_FEE
        else:
            percentage, fee = 0, LAST_MINUTE_FEE

    gross = money(paid_amount * percentage / 100)
    return RefundDecision(
        refund_percentage=percentage,
        cancellation_fee=fee,
        refund_amount=max(ZERO, gross - fee),
        trip_protection_applied=protected,
    )


def policy_summary() -> dict:
    return {
        "full_refund_hours": FULL_REFUND_HOURS,
        "partial_refund_hours": PARTIAL_REFUND_HOURS,
        "partial_refund_percentage": PARTIAL_REFUND_PERCENTAGE,
        "standard_fee": STANDARD_FEE,
        "last_minute_fee": LAST_MINUTE_FEE,
        "trip_protection_fee": TRIP_PROTECTION_FEE,
        "emergency_reasons": sorted(EMERGENCY_REASONS),
    }


# ---------------------------------------------------------------------------
# Refund bookkeeping
# ---------------------------------------------------------------------------

def record_refund_completed(cancellation: Cancellation, payment: Optional[Payment], now: datetime) -> None:
    if cancellation.refund_status == "completed":
        return
    cancellation.refund_status = "completed"
    cancellation.refund_processed_at = now
    if payment is not None:
        payment.refunded_amount = (payment.refunded_amount or ZERO) + cancellation.refund_amount
        payment.status = "REFUNDED" if payment.refunded_amount >= payment.amount else "PARTIALLY_REFUNDED"


async def issue_refund(
    db: AsyncSession,
    gateway: PaymentGateway,
    cancellation: Cancellation,
    payment: Payment,
    now: Optional[datetime] = None,
) -> Cancellation:
    """Send the refund to the processor and record the outcome."""
    now = now or utcnow()
    key = f"refund_{cancellation.id}"
    cancellation.refund_status = "processing"
    cancellation.refund_attempts += 1
    await db.commit()

    try:
        refund = await gateway.create_refund(
            payment.charge_ref,
            cancellation.refund_amount,
            key,
            {"booking_id": cancellation.booking_id, "cancellation_id": cancellation.id},
        )
    except PSPError as e:
        logger.error(
            "Refund failed: booking=%s amount=%s key=%s attempt=%d error=%s",
            cancellation.booking_id, cancellation.refund_amount, key, cancellation.refund_attempts, e,
        )
        cancellation.refund_status = "failed"
        await db.commit()
        return cancellation

    cancellation.refund_ref = refund["id"]
    if refund["status"] == "succeeded":
        record_refund_completed(cancellation, payment, now)
    elif refund["status"] == "failed":
        cancellation.refund_status = "failed"
    await db.commit()
    logger.info("Refund %s for booking %s: %s", refund["id"], cancellation.booking_id, cancellation.refund_status)
    return cancellation


def reprice_after_late_payment(cancellation: Cancellation, booking: Booking, paid_amount: Decimal) -> bool:
    """
    Re-run the policy for a charge that succeeded after its booking was
    cancelled, as of the moment of cancellation. Returns True when a refund
    is now due; the caller commits and issues it.
    """
    if cancellation.refund_status != "not_applicable":
        return False
    decision = calculate_refund(paid_amount, booking.scheduled_at, cancellation.created_at,
                                cancellation.cancellation_reason, booking.trip_protection)
    cancellation.refund_percentage = decision.refund_percentage
    cancellation.cancellation_fee = decision.cancellation_fee
    cancellation.refund_amount = decision.refund_amount
    cancellation.trip_protection_applied = decision.trip_protection_applied
    if decision.refund_amount <= 0:
        return False
    cancellation.refund_status = "pending"
    return True


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

async def cancel_booking(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking_id: str,
    payload: CancellationRequest,
    user_id: Optional[str] = None,
    cancelled_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Cancellation:
    now = now or utcnow()
    booking = await get_booking(db, booking_id, user_id, for_update=True)
    if booking.status == "CANCELLED":
        raise StateError(f"Booking {booking_id} is already cancelled", code="BOOKING_ALREADY_CANCELLED")
    if booking.status == "COMPLETED":
        raise StateError(f"Booking {booking_id} is completed and cannot be cancelled", code="BOOKING_COMPLETED")

    payment = await get_payment_for_booking(db, booking.id)
    if payment is not None and payment.charge_ref and payment.status in ("PENDING", "PROCESSING", "FAILED"):
        charge = await void_open_charge(gateway, payment)
        if charge is not None and charge["status"] == "succeeded":
            payment.status = "SUCCEEDED"
        elif charge is not None and charge["status"] == "canceled":
            payment.status = "CANCELLED"
    paid = payment.amount if payment is not None and payment.status == "SUCCEEDED" else ZERO
    decision = calculate_refund(paid, booking.scheduled_at, now, payload.reason, booking.trip_protection)

    cancellation = Cancellation(
        id=str(uuid.uuid4()),
        booking_id=booking.id,
        cancelled_by=cancelled_by or user_id or booking.user_id,
        cancellation_reason=payload.reason,
        cancellation_type=payload.cancellation_type.value,
        refund_percentage=decision.refund_percentage,
        cancellation_fee=decision.cancellation_fee,
        refund_amount=decision.refund_amount,
        refund_status="pending" if decision.refund_amount > 0 else "not_applicable",
        trip_protection_applied=decision.trip_protection_applied,
        created_at=now,
    )
    transition(booking, "CANCELLED")
    await release_driver(db, booking)
    db.add(cancellation)
    enqueue(db, booking.id, "booking_cancelled", {
        "refund_amount": str(decision.refund_amount),
        "cancellation_fee": str(decision.cancellation_fee),
    })
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise StateError(f"Booking {booking_id} is already cancelled", code="BOOKING_ALREADY_CANCELLED")

    logger.info(
        "Booking %s cancelled: reason=%s refund=%s fee=%s",
        booking.id, payload.reason, decision.refund_amount, decision.cancellation_fee,
    )
    if decision.refund_amount > 0:
        await issue_refund(db, gateway, cancellation, payment, now)
    return cancellation


async def get_cancellation(db: AsyncSession, booking_id: str, user_id: Optional[str] = None) -> Cancellation:
    await get_booking(db, booking_id, user_id)
    cancellation = await db.scalar(select(Cancellation).where(Cancellation.booking_id == booking_id))
    if cancellation is None:
        raise NotFoundError("Cancellation", booking_id)
    return cancellation


async def retry_failed_refunds(db: AsyncSession, gateway: PaymentGateway, now: Optional[datetime] = None) -> int:
    """
    Re-issue refunds that still have attempts left. Returns the number completed.

    Besides failed refunds this picks up rows left pending or processing with
    no processor reference, i.e. the process died before or during the call.
    The refund key is stable per cancellation, so a call that did reach the
    processor converges on the same refund.
    """
    now = now or utcnow()
    stale_before = now - timedelta(seconds=settings.refund_stale_after_seconds)
    result = await db.execute(
        select(Cancellation).where(
            Cancellation.refund_attempts < settings.refund_max_attempts,
            or_(
                Cancellation.refund_status == "failed",
                and_(
                    Cancellation.refund_status.in_(("pending", "processing")),
                    Cancellation.refund_ref.is_(None),
                    Cancellation.updated_at < stale_before,
                ),
            ),
        )
    )
    completed = 0
    for cancellation in result.scalars().all():
        payment = await get_payment_for_booking(db, cancellation.booking_id)
        if payment is None or payment.charge_ref is None:
            logger.error("Cannot retry refund for booking %s: no charge on record", cancellation.booking_id)
            continue
        await issue_refund(db, gateway, cancellation, payment, now)
        if cancellation.refund_status == "completed":
            completed += 1
    return completed
