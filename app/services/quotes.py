"""
Quote persistence and the quote request flow.

A quote is valid for ``quote_ttl_minutes``. Locking is a single conditional
UPDATE, so only the first caller wins; once locked the stored breakdown is
the authoritative price for booking creation.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.exceptions import ConflictError, NotFoundError, QuoteAlreadyLockedError, QuoteExpiredError
from app.models.booking import Booking
from app.models.quote import Quote
from app.schemas.pricing import BookingRequest, DistanceInfo, PriceCalculationResult, QuoteBreakdown
from app.schemas.schemas import RequoteRequest
from app.services import references
from app.services.distance import DistanceProvider
from app.services.pricing import PricingEngine

logger = logging.getLogger(__name__)
settings = get_settings()


class QuoteStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _reference_taken(self, reference: str) -> bool:
        found = await self.db.scalar(select(Quote.id).where(Quote.booking_reference == reference))
        return found is not None

    async def create(
        self,
        result: PriceCalculationResult,
        request: BookingRequest,
        user_id: Optional[str] = None,
        distance: Optional[DistanceInfo] = None,
    ) -> Quote:
        breakdown = result.breakdown
        for _ in range(settings.reference_max_attempts):
            if not await self._reference_taken(breakdown.booking_reference):
                break
            logger.warning("Quote reference collision on %s; regenerating", breakdown.booking_reference)
            breakdown = breakdown.model_copy(update={"booking_reference": references.quote_reference()})
        else:
            raise ConflictError("Could not allocate a unique quote reference", code="REFERENCE_EXHAUSTED")

        quote = Quote(
            user_id=user_id,
            service_type=request.service_type.value,
            request=request.model_dump(mode="json"),
            distance=distance.model_dump(mode="json") if distance else None,
            breakdown=breakdown.model_dump(mode="json"),
            warnings=list(result.warnings),
            booking_reference=breakdown.booking_reference,
            total_amount=breakdown.total,
            valid_until=breakdown.valid_until,
        )
        self.db.add(quote)
        await self.db.commit()
        logger.info("Quote %s created: ref=%s total=%s", quote.id, quote.booking_reference, quote.total_amount)
        return quote

    async def get(self, quote_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Quote:
        """Owned quotes are invisible to other users; anonymous quotes are visible to anyone."""
        quote = await self.db.get(Quote, quote_id)
        if quote is None or (quote.user_id is not None and quote.user_id != user_id):
            raise NotFoundError("Quote", quote_id)
        if (now or utcnow()) >= quote.valid_until:
            raise QuoteExpiredError(quote_id)
        return quote

    async def lock(self, quote_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Quote:
        now = now or utcnow()
        quote = await self.get(quote_id, user_id, now)

        values = {"locked_at": now}
        if quote.user_id is None and user_id is not None:
            values["user_id"] = user_id
        result = await self.db.execute(
            update(Quote)
            .where(Quote.id == quote_id, Quote.locked_at.is_(None), Quote.valid_until > now)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            await self.db.refresh(quote)
            if quote.locked_at is not None:
                raise QuoteAlreadyLockedError(quote_id)
            raise QuoteExpiredError(quote_id)

        await self.db.commit()
        await self.db.refresh(quote)
        logger.info("Quote %s locked at total=%s", quote_id, quote.total_amount)
        return quote

    async def list_recent(self, user_id: str, limit: int = 10, now: Optional[datetime] = None) -> list[Quote]:
        result = await self.db.execute(
            select(Quote)
            .where(Quote.user_id == user_id, Quote.valid_until > (now or utcnow()))
            .order_by(Quote.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired quotes that no booking references."""
        referenced = exists().where(Booking.quote_id == Quote.id)
        result = await self.db.execute(
            delete(Quote)
            .where(Quote.valid_until <= (now or utcnow()), ~referenced)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Swept %d expired quotes", result.rowcount)
        return result.rowcount


# ---------------------------------------------------------------------------
# Quote flow
# ---------------------------------------------------------------------------

async def is_returning_customer(db: AsyncSession, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    completed = await db.scalar(
        select(func.count()).select_from(Booking).where(Booking.user_id == user_id, Booking.status == "COMPLETED")
    )
    return bool(completed)


async def price_request(
    db: AsyncSession,
    engine: PricingEngine,
    distance_provider: DistanceProvider,
    request: BookingRequest,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[BookingRequest, Optional[DistanceInfo], PriceCalculationResult]:
    """Run one pricing calculation. Loyalty status always comes from booking history."""
    request = request.model_copy(update={"is_returning_customer": await is_returning_customer(db, user_id)})
    distance = None
    if request.needs_distance:
        distance = await distance_provider.get_distance(request.pickup_location, request.dropoff_location)
    return request, distance, engine.calculate_price(request, distance, now)


async def request_quote(
    db: AsyncSession,
    engine: PricingEngine,
    distance_provider: DistanceProvider,
    request: BookingRequest,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Quote:
    request, distance, result = await price_request(db, engine, distance_provider, request, user_id, now)
    return await QuoteStore(db).create(result, request, user_id, distance)


async def requote(
    db: AsyncSession,
    engine: PricingEngine,
    distance_provider: DistanceProvider,
    quote_id: str,
    changes: RequoteRequest,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Quote:
    """Price a fresh quote from an unlocked one with ``changes`` applied."""
    quote = await QuoteStore(db).get(quote_id, user_id, now)
    if quote.locked_at is not None:
        raise QuoteAlreadyLockedError(quote_id)
    data = {**quote.request, **changes.model_dump(mode="json", exclude_unset=True)}
    request = BookingRequest.model_validate(data)
    return await request_quote(db, engine, distance_provider, request, user_id, now)


def load_breakdown(quote: Quote) -> QuoteBreakdown:
    return QuoteBreakdown.model_validate(quote.breakdown)
