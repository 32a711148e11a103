"""
Quotes router: POST /v1/quotes, GET /v1/quotes/recent, GET /v1/quotes/{id},
               POST /v1/quotes/{id}/lock, POST /v1/quotes/{id}/requote
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_distance_provider, get_pricing_engine
from app.middleware.auth import get_current_user, get_optional_user
from app.models.quote import Quote
from app.schemas.pricing import BookingRequest, DistanceInfo
from app.schemas.schemas import QuoteResponse, RequoteRequest
from app.services import quotes as quote_service
from app.services.distance import DistanceProvider
from app.services.pricing import PricingEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/quotes", tags=["Quotes"])


def quote_response(quote: Quote) -> QuoteResponse:
    breakdown = quote_service.load_breakdown(quote)
    return QuoteResponse(
        id=quote.id,
        service_type=quote.service_type,
        base_rate=breakdown.base_rate,
        distance_charge=breakdown.distance_charge,
        time_charges=breakdown.time_charges,
        surcharges=list(breakdown.surcharges),
        discounts=list(breakdown.discounts),
        subtotal=breakdown.subtotal,
        taxes=breakdown.taxes,
        gratuity=breakdown.gratuity,
        total=breakdown.total,
        valid_until=quote.valid_until,
        booking_reference=quote.booking_reference,
        locked_at=quote.locked_at,
        distance=DistanceInfo.model_validate(quote.distance) if quote.distance else None,
        warnings=list(quote.warnings or []),
    )


@router.post("", response_model=QuoteResponse)
async def create_quote(
    payload: BookingRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_optional_user),
    engine: PricingEngine = Depends(get_pricing_engine),
    distance_provider: DistanceProvider = Depends(get_distance_provider),
):
    """Price a trip. Anonymous callers get a quote they can lock after signing in."""
    quote = await quote_service.request_quote(db, engine, distance_provider, payload, user_id)
    return quote_response(quote)


@router.get("/recent", response_model=list[QuoteResponse])
async def recent_quotes(
    limit: int = Query(default=10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    quotes = await quote_service.QuoteStore(db).list_recent(user_id, limit)
    return [quote_response(q) for q in quotes]


@router.get("/{quote_id}", response_model=QuoteResponse)
async def get_quote(
    quote_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_optional_user),
):
    quote = await quote_service.QuoteStore(db).get(quote_id, user_id)
    return quote_response(quote)


@router.post("/{quote_id}/lock", response_model=QuoteResponse)
async def lock_quote(
    quote_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    """Freeze the quote total for booking. Only the first lock succeeds."""
    quote = await quote_service.QuoteStore(db).lock(quote_id, user_id)
    return quote_response(quote)


@router.post("/{quote_id}/requote", response_model=QuoteResponse)
async def requote(
    quote_id: str,
    payload: RequoteRequest,
    db: AsyncSession = Depends(get_db),
    user_id: Optional[str] = Depends(get_optional_user),
    engine: PricingEngine = Depends(get_pricing_engine),
    distance_provider: DistanceProvider = Depends(get_distance_provider),
):
    quote = await quote_service.requote(db, engine, distance_provider, quote_id, payload, user_id)
    return quote_response(quote)
