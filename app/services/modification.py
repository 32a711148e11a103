"""
Booking modifications: request (priced, stored as pending) then apply.

Pricing a change re-runs the pricing engine on the modified trip and diffs
the result against the booking's fare. Applying is the only path that
changes a booking's total.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.exceptions import NotFoundError, StateError, ValidationError
from app.models.booking import Booking
from app.models.modification import BookingModification
from app.schemas.pricing import BookingRequest
from app.schemas.schemas import (
    BookingChange,
    DateTimeChange,
    EnhancementChange,
    EnhancementSelection,
    LocationChange,
    ModificationRequest,
    PassengerCountChange,
    ServiceTypeChange,
)
from app.services.booking import check_passengers, get_booking, trip_columns
from app.services.distance import DistanceProvider
from app.services.enhancements import enhancement_cost
from app.services.notifications import enqueue
from app.services.pricing import ZERO, PricingEngine, money, to_local
from app.services.quotes import price_request

logger = logging.getLogger(__name__)
settings = get_settings()

# Changes that carry the flat modification fee
FEE_BEARING_KINDS = frozenset({"datetime", "service_type"})
REPRICING_KINDS = frozenset({"datetime", "location", "service_type"})


def check_modifiable(booking: Booking, now: datetime) -> None:
    if booking.status in ("CANCELLED", "COMPLETED"):
        raise StateError(f"A {booking.status.lower()} booking cannot be modified",
                         code="BOOKING_NOT_MODIFIABLE", details={"status": booking.status})
    deadline = booking.scheduled_at - timedelta(hours=settings.modification_deadline_hours)
    if now >= deadline:
        raise StateError(
            f"Modifications close {settings.modification_deadline_hours} hours before pickup",
            code="MODIFICATION_DEADLINE_PASSED",
            details={"deadline": deadline.isoformat()},
        )
    if booking.modification_count >= settings.max_modifications:
        raise StateError(
            f"Booking has reached the limit of {settings.max_modifications} modifications",
            code="MODIFICATION_LIMIT_REACHED",
        )


def _snapshot(trip: BookingRequest, enhancements: dict, passenger_count: int) -> dict:
    return {
        "trip": trip.model_dump(mode="json"),
        "enhancements": enhancements,
        "passenger_count": passenger_count,
    }


def apply_change(trip: BookingRequest, change: BookingChange) -> BookingRequest:
    """Return the trip with one trip-level change applied."""
    if isinstance(change, DateTimeChange):
        update = {"pickup_datetime": change.new_pickup_datetime}
        if change.new_return_datetime is not None:
            update["return_datetime"] = change.new_return_datetime
        return trip.model_copy(update=update)
    if isinstance(change, LocationChange):
        update = {}
        if change.new_pickup_location is not None:
            update["pickup_location"] = change.new_pickup_location
        if change.new_dropoff_location is not None:
            update["dropoff_location"] = change.new_dropoff_location
        return trip.model_copy(update=update)
    if isinstance(change, ServiceTypeChange):
        return trip.model_copy(update={
            "service_type": change.to,
            "duration_hours": change.duration_hours,
            "return_datetime": change.return_datetime,
        })
    return trip


async def request_modification(
    db: AsyncSession,
    engine: PricingEngine,
    distance_provider: DistanceProvider,
    booking_id: str,
    payload: ModificationRequest,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BookingModification:
    """Price the requested changes and store them as a pending modification."""
    now = now or utcnow()
    booking = await get_booking(db, booking_id, user_id)
    check_modifiable(booking, now)
    tz = ZoneInfo(engine.config.calendar.timezone)

    original_trip = BookingRequest.model_validate(booking.trip)
    trip = original_trip
    enhancements = dict(booking.enhancements)
    passengers = booking.passenger_count
    kinds = [change.kind for change in payload.changes]

    for change in payload.changes:
        if isinstance(change, EnhancementChange):
            enhancements = change.enhancements.model_dump(mode="json")
        elif isinstance(change, PassengerCountChange):
            check_passengers(change.passenger_count)
            passengers = change.passenger_count
        else:
            trip = apply_change(trip, change)

    if "datetime" in kinds and to_local(trip.pickup_datetime, tz) <= now:
        raise ValidationError("New pickup must be in the future", field="new_pickup_datetime")

    new_fare = booking.fare_amount
    if REPRICING_KINDS.intersection(kinds):
        trip, _, result = await price_request(db, engine, distance_provider, trip, booking.user_id, now)
        new_fare = result.breakdown.total

    new_extras = enhancement_cost(EnhancementSelection.model_validate(enhancements))
    difference = money((new_fare - booking.fare_amount) + (new_extras - booking.enhancement_cost))
    fee = money(Decimal(str(settings.modification_fee))) if FEE_BEARING_KINDS.intersection(kinds) else ZERO

    modification = BookingModification(
        booking_id=booking.id,
        modified_by=user_id or booking.user_id,
        modification_type=",".join(kinds),
        original_data=_snapshot(original_trip, booking.enhancements, booking.passenger_count),
        new_data=_snapshot(trip, enhancements, passengers),
        original_total=booking.total_amount,
        new_fare_amount=new_fare,
        new_enhancement_cost=new_extras,
        price_difference=difference,
        modification_fee=fee,
        reason=payload.reason,
        status="pending",
    )
    db.add(modification)
    await db.commit()
    logger.info(
        "Modification %s requested for booking %s: kinds=%s difference=%s fee=%s",
        modification.id, booking.id, modification.modification_type, difference, fee,
    )
    return modification


def new_total(modification: BookingModification) -> Decimal:
    return modification.original_total + modification.price_difference + modification.modification_fee


def requires_payment(modification: BookingModification) -> bool:
    return modification.price_difference + modification.modification_fee > 0


async def list_modifications(db: AsyncSession, booking_id: str, user_id: Optional[str] = None) -> list[BookingModification]:
    await get_booking(db, booking_id, user_id)
    result = await db.execute(
        select(BookingModification)
        .where(BookingModification.booking_id == booking_id)
        .order_by(BookingModification.created_at)
    )
    return list(result.scalars().all())


async def apply_modification(
    db: AsyncSession,
    engine: PricingEngine,
    booking_id: str,
    modification_id: str,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    now = now or utcnow()
    booking = await get_booking(db, booking_id, user_id, for_update=True)
    modification = await db.get(BookingModification, modification_id)
    if modification is None or modification.booking_id != booking.id:
        raise NotFoundError("Modification", modification_id)
    if modification.status != "pending":
        raise StateError(f"Modification {modification_id} was already applied", code="MODIFICATION_APPLIED")

    check_modifiable(booking, now)
    if booking.total_amount != modification.original_total:
        raise StateError(
            "Booking changed since this modification was priced; request it again",
            code="MODIFICATION_STALE",
            details={"priced_against": str(modification.original_total), "current": str(booking.total_amount)},
        )

    tz = ZoneInfo(engine.config.calendar.timezone)
    data = modification.new_data
    trip = BookingRequest.model_validate(data["trip"])
    for column, value in trip_columns(trip, tz).items():
        setattr(booking, column, value)
    booking.enhancements = data["enhancements"]
    booking.trip_protection = bool(data["enhancements"].get("trip_protection", False))
    booking.passenger_count = data["passenger_count"]
    booking.notes = trip.special_instructions
    booking.fare_amount = modification.new_fare_amount
    booking.enhancement_cost = modification.new_enhancement_cost
    booking.total_amount = new_total(modification)
    booking.modification_count += 1
    booking.is_modified = True
    if booking.confirmation is not None:
        booking.confirmation.modification_deadline = (
            booking.scheduled_at - timedelta(hours=settings.modification_deadline_hours)
        )

    modification.status = "completed"
    modification.processed_at = now
    enqueue(db, booking.id, "booking_modified", {
        "modification_id": modification.id,
        "new_total": str(booking.total_amount),
    }, dedupe_key=f"booking_modified:{modification.id}")
    await db.commit()
    logger.info("Modification %s applied to booking %s; total now %s", modification.id, booking.id, booking.total_amount)
    return booking
