"""
Bookings router: booking creation, lookup, modifications and cancellation.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_distance_provider, get_payment_gateway, get_pricing_engine
from app.exceptions import NotFoundError
from app.middleware.auth import get_current_user
from app.middleware.idempotency import check_idempotency, store_idempotency_result
from app.models.booking import Booking
from app.config import get_settings
from app.redis_client import cache_delete, cache_get_json, cache_set_json, get_redis
from app.schemas.schemas import (
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingStatusEnum,
    CancellationRequest,
    CancellationResponse,
    ModificationOut,
    ModificationRequest,
    ModificationResponse,
)
from app.services import booking as booking_service
from app.services import cancellation as cancellation_service
from app.services import modification as modification_service
from app.services.distance import DistanceProvider
from app.services.payment import PaymentGateway
from app.services.pricing import PricingEngine

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/bookings", tags=["Bookings"])


def booking_cache_key(booking_id: str) -> str:
    return f"booking:{booking_id}"


def booking_response(booking: Booking) -> BookingResponse:
    confirmation = booking.confirmation
    return BookingResponse(
        id=booking.id,
        user_id=booking.user_id,
        status=booking.status,
        service_type=booking.service_type,
        pickup_address=booking.pickup_address,
        dropoff_address=booking.dropoff_address,
        scheduled_at=booking.scheduled_at,
        return_at=booking.return_at,
        duration_hours=booking.duration_hours,
        passenger_count=booking.passenger_count,
        fare_amount=booking.fare_amount,
        gratuity_amount=booking.gratuity_amount,
        enhancement_cost=booking.enhancement_cost,
        total_amount=booking.total_amount,
        trip_protection=booking.trip_protection,
        modification_count=booking.modification_count,
        is_modified=booking.is_modified,
        quote_id=booking.quote_id,
        driver_id=booking.driver_id,
        booking_reference=confirmation.booking_reference if confirmation else None,
        confirmation_number=confirmation.confirmation_number if confirmation else None,
        created_at=booking.created_at,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BookingResponse)
async def create_booking(
    payload: BookingCreateRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    user_id: str = Depends(get_current_user),
    engine: PricingEngine = Depends(get_pricing_engine),
    distance_provider: DistanceProvider = Depends(get_distance_provider),
):
    """
    Book a locked quote (its total is used verbatim) or a trip priced on the spot.
    Booking the same quote twice returns the first booking with 200.
    """
    cached = await check_idempotency(request, redis)
    if cached:
        return cached

    booking, created = await booking_service.create_booking(db, engine, distance_provider, payload, user_id)
    status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    response.status_code = status_code

    resp = booking_response(booking)
    await store_idempotency_result(request, redis, status_code, resp.model_dump(mode="json"))
    return resp


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatusEnum] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    include_archived: bool = False,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    bookings, total = await booking_service.list_bookings(
        db, user_id, status_filter.value if status_filter else None, limit, offset, include_archived
    )
    return BookingListResponse(bookings=[booking_response(b) for b in bookings], total=total)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    user_id: str = Depends(get_current_user),
):
    # Cache-aside: check Redis first
    cached = await cache_get_json(redis, booking_cache_key(booking_id))
    if cached:
        if cached["user_id"] != user_id:
            raise NotFoundError("Booking", booking_id)
        return BookingResponse(**cached)

    booking = await booking_service.get_booking(db, booking_id, user_id)
    resp = booking_response(booking)
    await cache_set_json(redis, booking_cache_key(booking_id), resp.model_dump(mode="json"),
                         ttl=settings.booking_cache_ttl_seconds)
    return resp


# ---------------------------------------------------------------------------
# Modifications
# ---------------------------------------------------------------------------

def _modification_response(modification) -> ModificationResponse:
    return ModificationResponse(
        modification=ModificationOut.model_validate(modification),
        price_difference=modification.price_difference,
        modification_fee=modification.modification_fee,
        requires_payment=modification_service.requires_payment(modification),
        new_total=modification_service.new_total(modification),
    )


@router.post("/{booking_id}/modifications", response_model=ModificationResponse)
async def request_modification(
    booking_id: str,
    payload: ModificationRequest,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
    engine: PricingEngine = Depends(get_pricing_engine),
    distance_provider: DistanceProvider = Depends(get_distance_provider),
):
    """Price the change without touching the booking."""
    modification = await modification_service.request_modification(
        db, engine, distance_provider, booking_id, payload, user_id
    )
    return _modification_response(modification)


@router.get("/{booking_id}/modifications", response_model=list[ModificationOut])
async def list_modifications(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    modifications = await modification_service.list_modifications(db, booking_id, user_id)
    return [ModificationOut.model_validate(m) for m in modifications]


@router.post("/{booking_id}/modifications/{modification_id}/apply", response_model=BookingResponse)
async def apply_modification(
    booking_id: str,
    modification_id: str,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    user_id: str = Depends(get_current_user),
    engine: PricingEngine = Depends(get_pricing_engine),
):
    booking = await modification_service.apply_modification(db, engine, booking_id, modification_id, user_id)
    await cache_delete(redis, booking_cache_key(booking_id))
    return booking_response(booking)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: str,
    payload: CancellationRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    user_id: str = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    cancellation = await cancellation_service.cancel_booking(db, gateway, booking_id, payload, user_id)
    await cache_delete(redis, booking_cache_key(booking_id))
    return CancellationResponse.model_validate(cancellation)


@router.get("/{booking_id}/cancellation", response_model=CancellationResponse)
async def get_cancellation(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    cancellation = await cancellation_service.get_cancellation(db, booking_id, user_id)
    return CancellationResponse.model_validate(cancellation)
