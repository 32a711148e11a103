"""
Booking lifecycle.

PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED, with CANCELLED reachable
from every non-terminal state. A booking and its confirmation record are
written in one transaction together with the outbox notification.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.exceptions import ConflictError, NotFoundError, StateError, ValidationError
from app.models.booking import Booking, BookingConfirmation
from app.models.driver import Driver
from app.schemas.pricing import BookingRequest
from app.schemas.schemas import BookingCreateRequest, EnhancementSelection
from app.services import references
from app.services.distance import DistanceProvider
from app.services.enhancements import enhancement_cost, gratuity_for
from app.services.notifications import enqueue
from app.services.pricing import PricingEngine, to_local
from app.services.quotes import QuoteStore, load_breakdown, price_request

logger = logging.getLogger(__name__)
settings = get_settings()

VALID_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"CONFIRMED", "CANCELLED"},
    "CONFIRMED": {"IN_PROGRESS", "CANCELLED"},
    "IN_PROGRESS": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}


def is_valid_transition(current: str, next_state: str) -> bool:
    return next_state in VALID_TRANSITIONS.get(current, set())


def transition(booking: Booking, next_state: str) -> None:
    if not is_valid_transition(booking.status, next_state):
        raise StateError(
            f"Booking {booking.id} cannot move from {booking.status} to {next_state}",
            code="INVALID_TRANSITION",
            details={"from": booking.status, "to": next_state},
        )
    logger.info("Booking %s: %s -> %s", booking.id, booking.status, next_state)
    booking.status = next_state


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def as_utc(value: Optional[datetime], tz: ZoneInfo) -> Optional[datetime]:
    if value is None:
        return None
    return to_local(value, tz).astimezone(timezone.utc)


def trip_columns(trip: BookingRequest, tz: ZoneInfo) -> dict:
    """Denormalised booking columns derived from the trip snapshot."""
    return {
        "service_type": trip.service_type.value,
        "trip": trip.model_dump(mode="json"),
        "pickup_address": trip.pickup_location.address,
        "dropoff_address": trip.dropoff_location.address if trip.dropoff_location else None,
        "scheduled_at": as_utc(trip.pickup_datetime, tz),
        "return_at": as_utc(trip.return_datetime, tz),
        "duration_hours": trip.duration_hours,
    }


async def _unique_reference(db: AsyncSession, column, factory: Callable[[], str]) -> str:
    for _ in range(settings.reference_max_attempts):
        candidate = factory()
        if await db.scalar(select(column).where(column == candidate)) is None:
            return candidate
        logger.warning("Reference collision on %s; regenerating", candidate)
    raise ConflictError("Could not allocate a unique reference", code="REFERENCE_EXHAUSTED")


def check_passengers(count: int) -> None:
    if count > settings.max_passengers:
        raise ValidationError(
            f"At most {settings.max_passengers} passengers per booking", field="passenger_count"
        )


async def _booking_for_quote(db: AsyncSession, quote_id: str) -> Optional[Booking]:
    return await db.scalar(select(Booking).where(Booking.quote_id == quote_id))


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_booking(
    db: AsyncSession,
    engine: PricingEngine,
    distance_provider: DistanceProvider,
    payload: BookingCreateRequest,
    user_id: str,
    now: Optional[datetime] = None,
) -> tuple[Booking, bool]:
    """
    Create a PENDING booking. Returns ``(booking, created)``; booking the same
    locked quote again returns the existing booking with ``created=False``.
    """
    now = now or utcnow()
    check_passengers(payload.passenger_count)
    tz = ZoneInfo(engine.config.calendar.timezone)

    if payload.quote_id:
        existing = await _booking_for_quote(db, payload.quote_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise NotFoundError("Quote", payload.quote_id)
            return existing, False

        quote = await QuoteStore(db).get(payload.quote_id, user_id, now)
        if quote.locked_at is None:
            raise StateError("Quote must be locked before booking", code="QUOTE_NOT_LOCKED",
                             details={"id": quote.id})
        breakdown = load_breakdown(quote)
        trip = BookingRequest.model_validate(quote.request)
        fare, subtotal = breakdown.total, breakdown.subtotal
    else:
        trip, _, result = await price_request(db, engine, distance_provider, payload.trip, user_id, now)
        fare, subtotal = result.breakdown.total, result.breakdown.subtotal

    selection = payload.enhancements or EnhancementSelection()
    extras = enhancement_cost(selection)
    gratuity = gratuity_for(subtotal, payload.gratuity_percentage, payload.gratuity_amount)

    columns = trip_columns(trip, tz)
    if columns["scheduled_at"] <= now:
        raise ValidationError("Pickup must be in the future", field="pickup_datetime")

    booking = Booking(
        id=str(uuid.uuid4()),
        user_id=user_id,
        quote_id=payload.quote_id,
        status="PENDING",
        passenger_count=payload.passenger_count,
        contact_phone=payload.contact_phone,
        notes=trip.special_instructions,
        fare_amount=fare,
        gratuity_amount=gratuity,
        enhancement_cost=extras,
        total_amount=fare + gratuity + extras,
        enhancements=selection.model_dump(mode="json"),
        trip_protection=selection.trip_protection,
        **columns,
    )
    booking.confirmation = BookingConfirmation(
        booking_reference=await _unique_reference(
            db, BookingConfirmation.booking_reference, lambda: references.booking_reference(now)
        ),
        confirmation_number=await _unique_reference(
            db, BookingConfirmation.confirmation_number, references.confirmation_number
        ),
        modification_deadline=columns["scheduled_at"] - timedelta(hours=settings.modification_deadline_hours),
    )
    db.add(booking)
    enqueue(db, booking.id, "booking_created", {
        "booking_reference": booking.confirmation.booking_reference,
        "confirmation_number": booking.confirmation.confirmation_number,
        "total_amount": str(booking.total_amount),
    })

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if payload.quote_id:
            existing = await _booking_for_quote(db, payload.quote_id)
            if existing is not None and existing.user_id == user_id:
                return existing, False
        raise ConflictError("Booking could not be created; please retry")

    logger.info(
        "Booking %s created: ref=%s total=%s quote=%s",
        booking.id, booking.confirmation.booking_reference, booking.total_amount, booking.quote_id,
    )
    return booking, True


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_booking(
    db: AsyncSession,
    booking_id: str,
    user_id: Optional[str] = None,
    for_update: bool = False,
) -> Booking:
    """``user_id=None`` skips the ownership check (staff and driver paths)."""
    stmt = select(Booking).where(Booking.id == booking_id)
    if for_update:
        stmt = stmt.with_for_update()
    booking = await db.scalar(stmt)
    if booking is None or (user_id is not None and booking.user_id != user_id):
        raise NotFoundError("Booking", booking_id)
    return booking


async def list_bookings(
    db: AsyncSession,
    user_id: str,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    include_archived: bool = False,
) -> tuple[list[Booking], int]:
    filters = [Booking.user_id == user_id]
    if status:
        filters.append(Booking.status == status)
    if not include_archived:
        filters.append(Booking.archived.is_(False))

    total = await db.scalar(select(func.count()).select_from(Booking).where(*filters))
    result = await db.execute(
        select(Booking).where(*filters).order_by(Booking.scheduled_at.desc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all()), total or 0


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def confirm_booking(db: AsyncSession, booking: Booking) -> bool:
    """PENDING -> CONFIRMED after payment. A no-op for any other state."""
    if booking.status != "PENDING":
        logger.warning("Payment succeeded for booking %s in state %s; status unchanged", booking.id, booking.status)
        return False
    transition(booking, "CONFIRMED")
    enqueue(db, booking.id, "booking_confirmed", {"total_amount": str(booking.total_amount)})
    return True


async def _driver(db: AsyncSession, driver_id: str) -> Driver:
    driver = await db.scalar(select(Driver).where(Driver.id == driver_id).with_for_update())
    if driver is None:
        raise NotFoundError("Driver", driver_id)
    return driver


async def assign_driver(db: AsyncSession, booking_id: str, driver_id: str) -> Booking:
    booking = await get_booking(db, booking_id, for_update=True)
    if booking.status != "CONFIRMED":
        raise StateError(f"Only confirmed bookings can be assigned (status={booking.status})",
                         code="INVALID_STATE")
    driver = await _driver(db, driver_id)
    if driver.status != "available":
        raise StateError(f"Driver {driver_id} is {driver.status}", code="DRIVER_UNAVAILABLE")
    if driver.seats < booking.passenger_count:
        raise StateError(f"Driver {driver_id} seats {driver.seats}, booking needs {booking.passenger_count}",
                         code="DRIVER_CAPACITY", details={"seats": driver.seats})
    booking.driver_id = driver.id
    await db.commit()
    logger.info("Driver %s assigned to booking %s", driver_id, booking_id)
    return booking


async def start_trip(db: AsyncSession, booking_id: str, driver_id: str) -> Booking:
    booking = await get_booking(db, booking_id, for_update=True)
    if booking.driver_id != driver_id:
        raise NotFoundError("Booking", booking_id)
    transition(booking, "IN_PROGRESS")
    driver = await _driver(db, driver_id)
    driver.status = "on_trip"
    driver.current_booking_id = booking.id
    await db.commit()
    return booking


async def complete_trip(db: AsyncSession, booking_id: str, driver_id: str) -> Booking:
    booking = await get_booking(db, booking_id, for_update=True)
    if booking.driver_id != driver_id:
        raise NotFoundError("Booking", booking_id)
    transition(booking, "COMPLETED")
    driver = await _driver(db, driver_id)
    driver.status = "available"
    driver.current_booking_id = None
    await db.commit()
    return booking


async def release_driver(db: AsyncSession, booking: Booking) -> None:
    """Free the driver running ``booking``, if any."""
    if booking.driver_id is None:
        return
    driver = await _driver(db, booking.driver_id)
    if driver.current_booking_id == booking.id:
        driver.status = "available"
        driver.current_booking_id = None
        logger.info("Driver %s released from booking %s", driver.id, booking.id)


async def archive_completed(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Flag completed bookings older than ``archive_after_days``. Nothing is deleted."""
    cutoff = (now or utcnow()) - timedelta(days=settings.archive_after_days)
    result = await db.execute(
        update(Booking)
        .where(Booking.status == "COMPLETED", Booking.archived.is_(False), Booking.scheduled_at < cutoff)
        .values(archived=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Archived %d completed bookings", result.rowcount)
    return result.rowcount
