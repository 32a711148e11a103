"""
Payments router: POST /v1/payments/intents, POST /v1/payments/{id}/confirm,
                 POST /v1/payments/webhook
"""
import json
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.dependencies import get_payment_gateway
from app.middleware.auth import get_current_user
from app.middleware.idempotency import check_idempotency, store_idempotency_result
from app.models.payment import Payment
from app.redis_client import cache_delete, get_redis
from app.routers.bookings import booking_cache_key
from app.schemas.schemas import PaymentConfirmRequest, PaymentIntentRequest, PaymentResponse, WebhookEvent
from app.services import payment as payment_service
from app.services import webhooks
from app.services.payment import PaymentGateway

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


def payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.id,
        booking_id=payment.booking_id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        charge_ref=payment.charge_ref,
        client_secret=payment.client_secret,
        failure_reason=payment.failure_reason,
    )


@router.post("/intents", response_model=PaymentResponse)
async def create_payment_intent(
    payload: PaymentIntentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    user_id: str = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Start payment for a PENDING booking.
    - Amount is always the booking's server-side total.
    - Concurrent or repeated calls for one booking share a single charge.
    """
    cached = await check_idempotency(request, redis)
    if cached:
        return cached

    payment = await payment_service.create_payment_intent(db, gateway, payload.booking_id, user_id)
    if payment.status == "SUCCEEDED":
        await cache_delete(redis, booking_cache_key(payment.booking_id))

    resp = payment_response(payment)
    await store_idempotency_result(request, redis, status.HTTP_200_OK, resp.model_dump(mode="json"))
    return resp


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    payment_id: str,
    payload: PaymentConfirmRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    user_id: str = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = await payment_service.confirm_payment(db, gateway, payment_id, user_id, payload.payment_method_id)
    await cache_delete(redis, booking_cache_key(payment.booking_id))
    return payment_response(payment)


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    signature: str | None = Header(default=None, alias="X-Signature"),
):
    """
    Processor callback. Always answers 200 once the event is authentic so the
    processor does not pile up retries; processing failures are logged for
    manual reconciliation.
    """
    body = await request.body()
    if not webhooks.verify_signature(body, signature, settings.psp_webhook_secret):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    try:
        event = WebhookEvent.model_validate(json.loads(body))
    except (ValueError, SchemaValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed event")

    try:
        outcome, booking_id = await webhooks.handle_event(db, event, gateway=gateway)
    except Exception:
        logger.exception("Webhook %s (%s) failed; needs manual reconciliation", event.id, event.type)
        await db.rollback()
        return {"received": True, "status": "error"}

    if booking_id:
        await cache_delete(redis, booking_cache_key(booking_id))
    return {"received": True, "status": outcome}
