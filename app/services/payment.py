"""
Payment processor adapter and the payment-intent flow.

The processor is reached through PaymentGateway. Every charge carries an
idempotency key derived from booking id and amount, so a retried create
converges on the charge the processor already accepted.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import utcnow
from app.exceptions import NotFoundError, PaymentFailedError, StateError, UpstreamError
from app.models.booking import Booking
from app.models.payment import Payment
from app.services.booking import confirm_booking, get_booking

logger = logging.getLogger(__name__)
settings = get_settings()


class PSPError(Exception):
    """
    Processor call failed. ``ambiguous`` means the processor may have acted
    on the request (timeout, 5xx) and the outcome must be looked up.
    """

    def __init__(self, message: str, ambiguous: bool = False) -> None:
        super().__init__(message)
        self.ambiguous = ambiguous


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def payment_idempotency_key(booking_id: str, amount: Decimal) -> str:
    return f"payment_intent_{booking_id}_{to_cents(amount)}"


# ---------------------------------------------------------------------------
# Gateway contract
# ---------------------------------------------------------------------------
#
# Charges and refunds are plain dicts:
#   charge: {"id", "status", "amount", "client_secret", "failure_reason"}
#   refund: {"id", "status", "amount"}
# Charge status: requires_confirmation | processing | succeeded | failed | canceled
# Refund status: pending | succeeded | failed
# A refund amount of None refunds the whole charge.

class PaymentGateway(ABC):
    @abstractmethod
    async def create_charge(self, amount: Decimal, customer_ref: str, idempotency_key: str,
                            metadata: dict[str, Any]) -> dict:
        ...

    @abstractmethod
    async def confirm_charge(self, charge_ref: str, payment_method_id: Optional[str] = None) -> dict:
        ...

    @abstractmethod
    async def cancel_charge(self, charge_ref: str) -> dict:
        """Void a charge that has not succeeded."""

    @abstractmethod
    async def create_refund(self, charge_ref: str, amount: Optional[Decimal], idempotency_key: str,
                            metadata: dict[str, Any]) -> dict:
        ...

    @abstractmethod
    async def retrieve_charge_by_idempotency_key(self, idempotency_key: str) -> Optional[dict]:
        ...


_CHARGE_STATUS = {
    "requires_payment_method": "requires_confirmation",
    "requires_confirmation": "requires_confirmation",
    "requires_action": "requires_confirmation",
    "processing": "processing",
    "succeeded": "succeeded",
    "canceled": "canceled",
}


class HttpPaymentGateway(PaymentGateway):
    """Stripe-style payment-intents API over httpx with bounded retries."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10, max_attempts: int = 3,
                 currency: str = "usd") -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.currency = currency

    async def _call(self, method: str, path: str, idempotency_key: Optional[str] = None,
                    data: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, f"{self.base_url}{path}",
                                                headers=headers, data=data, params=params)
                if resp.status_code >= 500:
                    raise PSPError(f"PSP error {resp.status_code}: {resp.text}", ambiguous=True)
                if resp.status_code >= 400:
                    raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
                return resp.json()
            except httpx.TransportError as e:
                error = PSPError(f"PSP unreachable: {e}", ambiguous=True)
            except PSPError as e:
                if not e.ambiguous:
                    raise
                error = e
            if attempt == self.max_attempts:
                logger.error("PSP %s %s failed after %d attempts: %s", method, path, attempt, error)
                raise error
            await asyncio.sleep(2 ** attempt)
        raise PSPError("PSP call not attempted")

    @staticmethod
    def _charge(body: dict) -> dict:
        error = body.get("last_payment_error") or {}
        status = _CHARGE_STATUS.get(body.get("status"), "failed")
        if error and status == "requires_confirmation":
            # Declined; the intent stays open for another payment method
            status = "failed"
        return {
            "id": body["id"],
            "status": status,
            "amount": Decimal(body.get("amount", 0)) / 100,
            "client_secret": body.get("client_secret"),
            "failure_reason": error.get("message"),
        }

    @staticmethod
    def _form_metadata(metadata: dict[str, Any]) -> dict:
        return {f"metadata[{k}]": str(v) for k, v in metadata.items()}

    async def create_charge(self, amount, customer_ref, idempotency_key, metadata):
        data = {
            "amount": to_cents(amount),
            "currency": self.currency,
            **self._form_metadata({**metadata, "customer_ref": customer_ref, "idempotency_key": idempotency_key}),
        }
        return self._charge(await self._call("POST", "/payment_intents", idempotency_key, data=data))

    async def confirm_charge(self, charge_ref, payment_method_id=None):
        data = {"payment_method": payment_method_id} if payment_method_id else None
        return self._charge(await self._call("POST", f"/payment_intents/{charge_ref}/confirm", data=data))

    async def cancel_charge(self, charge_ref):
        return self._charge(await self._call("POST", f"/payment_intents/{charge_ref}/cancel"))

    async def create_refund(self, charge_ref, amount, idempotency_key, metadata):
        data = {"payment_intent": charge_ref, **self._form_metadata(metadata)}
        if amount is not None:
            data["amount"] = to_cents(amount)
        body = await self._call("POST", "/refunds", idempotency_key, data=data)
        status = body.get("status")
        return {
            "id": body["id"],
            "status": status if status in ("succeeded", "failed") else "pending",
            "amount": Decimal(body.get("amount", 0)) / 100,
        }

    async def retrieve_charge_by_idempotency_key(self, idempotency_key):
        body = await self._call(
            "GET", "/payment_intents/search",
            params={"query": f"metadata['idempotency_key']:'{idempotency_key}'"},
        )
        found = body.get("data") or []
        return self._charge(found[0]) if found else None


class SandboxPaymentGateway(PaymentGateway):
    """
    In-memory processor for development and tests. Honours idempotency keys
    the way a real processor does. Payment method ``pm_card_declined`` fails.
    """

    DECLINED_METHOD = "pm_card_declined"

    def __init__(self) -> None:
        self.charges: dict[str, dict] = {}
        self.refunds: dict[str, dict] = {}
        self._charge_keys: dict[str, str] = {}
        self._refund_keys: dict[str, str] = {}
        self.create_calls = 0

    async def create_charge(self, amount, customer_ref, idempotency_key, metadata):
        self.create_calls += 1
        await asyncio.sleep(0)
        if amount <= 0:
            raise PSPError("Amount must be positive")
        if idempotency_key in self._charge_keys:
            return dict(self.charges[self._charge_keys[idempotency_key]])
        charge = {
            "id": f"ch_{uuid.uuid4().hex[:16]}",
            "status": "requires_confirmation",
            "amount": amount,
            "client_secret": f"secret_{uuid.uuid4().hex[:16]}",
            "failure_reason": None,
        }
        self.charges[charge["id"]] = charge
        self._charge_keys[idempotency_key] = charge["id"]
        return dict(charge)

    async def confirm_charge(self, charge_ref, payment_method_id=None):
        charge = self.charges.get(charge_ref)
        if charge is None:
            raise PSPError(f"No such charge {charge_ref}")
        if charge["status"] in ("requires_confirmation", "failed"):
            if payment_method_id == self.DECLINED_METHOD:
                charge["status"] = "failed"
                charge["failure_reason"] = "Your card was declined."
            else:
                charge["status"] = "succeeded"
                charge["failure_reason"] = None
        return dict(charge)

    async def cancel_charge(self, charge_ref):
        charge = self.charges.get(charge_ref)
        if charge is None:
            raise PSPError(f"No such charge {charge_ref}")
        if charge["status"] in ("requires_confirmation", "failed"):
            charge["status"] = "canceled"
        elif charge["status"] != "canceled":
            raise PSPError(f"Charge {charge_ref} cannot be canceled (status={charge['status']})")
        return dict(charge)

    async def create_refund(self, charge_ref, amount, idempotency_key, metadata):
        if idempotency_key in self._refund_keys:
            return dict(self.refunds[self._refund_keys[idempotency_key]])
        charge = self.charges.get(charge_ref)
        if charge is None or charge["status"] != "succeeded":
            raise PSPError(f"Charge {charge_ref} cannot be refunded")
        if amount is None:
            amount = charge["amount"]
        refund = {"id": f"re_{uuid.uuid4().hex[:16]}", "status": "succeeded", "amount": amount}
        self.refunds[refund["id"]] = refund
        self._refund_keys[idempotency_key] = refund["id"]
        return dict(refund)

    async def retrieve_charge_by_idempotency_key(self, idempotency_key):
        charge_id = self._charge_keys.get(idempotency_key)
        return dict(self.charges[charge_id]) if charge_id else None


def build_payment_gateway(cfg: Optional[Settings] = None) -> PaymentGateway:
    cfg = cfg or settings
    if cfg.psp_api_key:
        return HttpPaymentGateway(cfg.psp_base_url, cfg.psp_api_key, cfg.psp_timeout_seconds,
                                  cfg.psp_max_attempts, cfg.currency)
    logger.warning("No PSP API key configured; using the in-memory sandbox gateway")
    return SandboxPaymentGateway()


# ---------------------------------------------------------------------------
# Payment flows
# ---------------------------------------------------------------------------

async def get_payment_for_booking(db: AsyncSession, booking_id: str) -> Optional[Payment]:
    return await db.scalar(select(Payment).where(Payment.booking_id == booking_id))


async def get_payment(db: AsyncSession, payment_id: str, user_id: Optional[str] = None) -> Payment:
    payment = await db.get(Payment, payment_id)
    if payment is None or (user_id is not None and payment.user_id != user_id):
        raise NotFoundError("Payment", payment_id)
    return payment


def _claim_is_stale(payment: Payment, now: datetime) -> bool:
    """A PENDING claim without a charge whose owner has had time to finish."""
    window = timedelta(seconds=settings.psp_timeout_seconds * settings.psp_max_attempts)
    return now - payment.updated_at > window


async def mark_payment_succeeded(db: AsyncSession, payment: Payment) -> None:
    """Record success and confirm the booking; the caller commits."""
    payment.status = "SUCCEEDED"
    payment.failure_reason = None
    booking = await db.get(Booking, payment.booking_id)
    if booking is not None:
        confirm_booking(db, booking)


def _apply_charge(payment: Payment, charge: dict) -> None:
    payment.charge_ref = charge["id"]
    payment.client_secret = charge.get("client_secret")
    if charge["status"] == "processing":
        payment.status = "PROCESSING"
    elif charge["status"] == "failed":
        payment.status = "FAILED"
        payment.failure_reason = charge.get("failure_reason") or "Charge failed"
    elif charge["status"] == "canceled":
        payment.status = "CANCELLED"


async def void_open_charge(gateway: PaymentGateway, payment: Payment) -> Optional[dict]:
    """
    Cancel the payment's charge at the processor so it can no longer be
    confirmed. Returns the processor's view of the charge, or None when the
    processor refused; a charge that already succeeded cannot be voided and
    is refunded once its success is reported. The caller commits.
    """
    try:
        charge = await gateway.cancel_charge(payment.charge_ref)
    except PSPError as e:
        logger.warning("Could not void charge %s for booking %s: %s", payment.charge_ref, payment.booking_id, e)
        return None
    logger.info("Voided charge %s for booking %s (status=%s)", charge["id"], payment.booking_id, charge["status"])
    return charge


async def create_payment_intent(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> Payment:
    """
    Create (or return the in-flight) charge for a PENDING booking.

    The PENDING Payment row is committed before the processor is called; the
    unique ``booking_id`` makes a concurrent second caller fall through to
    the first caller's row instead of creating another charge.
    """
    now = now or utcnow()
    booking = await get_booking(db, booking_id, user_id)
    if booking.status != "PENDING":
        raise StateError(f"Booking {booking_id} is not awaiting payment (status={booking.status})",
                         code="BOOKING_NOT_PAYABLE")

    amount = booking.total_amount
    key = payment_idempotency_key(booking.id, amount)

    payment = await get_payment_for_booking(db, booking.id)
    if payment is None:
        payment = Payment(
            booking_id=booking.id,
            user_id=user_id,
            amount=amount,
            currency=settings.currency,
            status="PENDING",
            idempotency_key=key,
        )
        db.add(payment)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            payment = await get_payment_for_booking(db, booking_id)
            if payment is None:
                raise
            logger.info("Concurrent payment intent for booking %s; reusing payment %s", booking_id, payment.id)
            return payment
    else:
        if payment.status in ("SUCCEEDED", "PROCESSING", "REFUNDED", "PARTIALLY_REFUNDED"):
            return payment
        in_flight = payment.status == "PENDING" and (payment.charge_ref or not _claim_is_stale(payment, now))
        if in_flight and payment.amount == amount:
            return payment
        if payment.status == "FAILED" and payment.amount == amount and payment.charge_ref:
            # A declined charge can be confirmed again with another payment method
            payment.status = "PENDING"
            payment.failure_reason = None
            await db.commit()
            return payment
        if payment.status == "FAILED" or payment.amount != amount:
            # Retry after failure, or the total changed through a modification.
            # The superseded charge must not stay confirmable.
            if payment.charge_ref:
                await void_open_charge(gateway, payment)
            payment.amount = amount
            payment.idempotency_key = key
            payment.status = "PENDING"
            payment.failure_reason = None
            payment.charge_ref = None
            payment.client_secret = None
            await db.commit()

    metadata = {"booking_id": booking.id, "payment_id": payment.id}
    try:
        charge = await gateway.create_charge(amount, user_id, key, metadata)
    except PSPError as e:
        charge = None
        if e.ambiguous:
            try:
                charge = await gateway.retrieve_charge_by_idempotency_key(key)
            except PSPError as lookup_error:
                logger.error("Charge lookup failed for key=%s: %s", key, lookup_error)
        if charge is None:
            logger.error(
                "Payment intent failed: booking=%s amount=%s key=%s error=%s",
                booking.id, amount, key, e,
            )
            payment.status = "FAILED"
            payment.failure_reason = str(e)
            await db.commit()
            raise UpstreamError(
                "Payment processor could not create the charge",
                code="PAYMENT_INTENT_FAILED",
                details={"booking_id": booking.id, "idempotency_key": key},
            ) from e
        logger.warning("Recovered charge %s for key=%s after ambiguous error", charge["id"], key)

    _apply_charge(payment, charge)
    if charge["status"] == "succeeded":
        await mark_payment_succeeded(db, payment)
    await db.commit()
    logger.info("Payment intent %s: booking=%s charge=%s amount=%s", payment.id, booking.id, payment.charge_ref, amount)
    return payment


async def confirm_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    payment_id: str,
    user_id: Optional[str] = None,
    payment_method_id: Optional[str] = None,
) -> Payment:
    """
    Confirm the charge. Safe to retry: a succeeded payment is returned as is,
    and a declined one may be confirmed again with another payment method.
    """
    payment = await get_payment(db, payment_id, user_id)
    if payment.status == "SUCCEEDED":
        return payment
    if payment.charge_ref is None or payment.status not in ("PENDING", "PROCESSING", "FAILED"):
        raise StateError(f"Payment {payment_id} cannot be confirmed (status={payment.status})",
                         code="PAYMENT_NOT_CONFIRMABLE")
    booking = await db.get(Booking, payment.booking_id)
    if booking is None or booking.status != "PENDING":
        raise StateError(f"Booking {payment.booking_id} is not awaiting payment",
                         code="BOOKING_NOT_PAYABLE")

    try:
        charge = await gateway.confirm_charge(payment.charge_ref, payment_method_id)
    except PSPError as e:
        logger.error(
            "Payment confirm failed: booking=%s amount=%s key=%s error=%s",
            payment.booking_id, payment.amount, payment.idempotency_key, e,
        )
        raise UpstreamError("Payment processor could not confirm the charge",
                            code="PAYMENT_CONFIRM_FAILED", details={"payment_id": payment.id}) from e

    _apply_charge(payment, charge)
    if charge["status"] == "succeeded":
        await mark_payment_succeeded(db, payment)
    await db.commit()

    if payment.status == "FAILED":
        logger.warning("Payment %s declined for booking %s: %s", payment.id, payment.booking_id, payment.failure_reason)
        raise PaymentFailedError(payment.failure_reason or "Payment failed",
                                 details={"payment_id": payment.id, "booking_id": payment.booking_id})
    return payment
