"""
Integration tests for the booking lifecycle: creation from a locked quote,
modifications, cancellation with refunds and the driver trip flow.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select

from app.database import utcnow
from app.exceptions import ConflictError, NotFoundError, StateError, ValidationError
from app.models.booking import Booking, BookingConfirmation
from app.models.driver import Driver
from app.models.notification import NotificationJob
from app.schemas.schemas import (
    BookingCreateRequest,
    CancellationRequest,
    DateTimeChange,
    EnhancementChange,
    EnhancementSelection,
    ModificationRequest,
    PassengerCountChange,
)
from app.services import booking as booking_service
from app.services import cancellation as cancellation_service
from app.services import modification as modification_service
from app.services import payment as payment_service
from app.services import quotes as quote_service
from app.services.payment import PSPError, SandboxPaymentGateway
from app.services.quotes import QuoteStore

from conftest import trip_request

NOW = datetime(2027, 3, 5, 10, 0, tzinfo=timezone.utc)
PICKUP_AT = datetime(2027, 3, 6, 12, 0, tzinfo=timezone.utc)


class RefundOutageGateway(SandboxPaymentGateway):
    def __init__(self):
        super().__init__()
        self.refunds_down = True

    async def create_refund(self, charge_ref, amount, idempotency_key, metadata):
        if self.refunds_down:
            raise PSPError("refund service unavailable", ambiguous=True)
        return await super().create_refund(charge_ref, amount, idempotency_key, metadata)


class InterruptedRefundGateway(SandboxPaymentGateway):
    """The worker dies while the refund call is in flight."""

    def __init__(self):
        super().__init__()
        self.interrupted = True

    async def create_refund(self, charge_ref, amount, idempotency_key, metadata):
        if self.interrupted:
            raise RuntimeError("worker stopped")
        return await super().create_refund(charge_ref, amount, idempotency_key, metadata)


async def book_quote(db, engine, provider, user_id="cust-1", **payload):
    quote = await quote_service.request_quote(db, engine, provider, trip_request(PICKUP_AT), user_id, NOW)
    await QuoteStore(db).lock(quote.id, user_id, NOW)
    request = BookingCreateRequest(quote_id=quote.id, contact_phone="5551234567", **payload)
    booking, created = await booking_service.create_booking(db, engine, provider, request, user_id, NOW)
    assert created
    return booking


async def pay(db, gateway, booking, user_id="cust-1"):
    payment = await payment_service.create_payment_intent(db, gateway, booking.id, user_id, NOW)
    return await payment_service.confirm_payment(db, gateway, payment.id, user_id, "pm_card_visa")


async def jobs(db, kind):
    result = await db.execute(select(NotificationJob).where(NotificationJob.kind == kind))
    return list(result.scalars().all())


@pytest.mark.asyncio
class TestCreateBooking:
    async def test_locked_quote_total_is_used(self, db, pricing_engine, distance_provider):
        booking = await book_quote(
            db, pricing_engine, distance_provider,
            gratuity_percentage=Decimal("15"),
            enhancements=EnhancementSelection(trip_protection=True),
        )
        assert booking.status == "PENDING"
        assert booking.fare_amount == Decimal("81.28")
        assert booking.gratuity_amount == Decimal("11.25")
        assert booking.enhancement_cost == Decimal("9.00")
        assert booking.total_amount == Decimal("101.53")
        assert booking.trip_protection
        assert booking.scheduled_at == PICKUP_AT
        assert booking.confirmation.booking_reference.startswith("BK-2027-")
        assert booking.confirmation.confirmation_number.startswith("CNF")
        assert booking.confirmation.modification_deadline == PICKUP_AT - timedelta(hours=2)
        assert len(await jobs(db, "booking_created")) == 1

    async def test_locked_total_survives_price_change(self, db, pricing_engine, distance_provider):
        quote = await quote_service.request_quote(
            db, pricing_engine, distance_provider, trip_request(PICKUP_AT), "cust-1", NOW
        )
        await QuoteStore(db).lock(quote.id, "cust-1", NOW)
        pricier = pricing_engine.config.model_copy(update={
            "version": "pricier",
            "one_way": pricing_engine.config.one_way.model_copy(update={"base_rate": Decimal("40.00")}),
        })
        pricing_engine.swap_config(pricier)

        request = BookingCreateRequest(quote_id=quote.id, contact_phone="5551234567")
        booking, _ = await booking_service.create_booking(
            db, pricing_engine, distance_provider, request, "cust-1", NOW
        )
        assert booking.fare_amount == quote.total_amount

    async def test_same_quote_twice_returns_existing(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        request = BookingCreateRequest(quote_id=booking.quote_id, contact_phone="5551234567")
        again, created = await booking_service.create_booking(
            db, pricing_engine, distance_provider, request, "cust-1", NOW
        )
        assert not created
        assert again.id == booking.id

    async def test_other_user_cannot_book_quote(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        request = BookingCreateRequest(quote_id=booking.quote_id, contact_phone="5551234567")
        with pytest.raises(NotFoundError):
            await booking_service.create_booking(db, pricing_engine, distance_provider, request, "cust-2", NOW)

    async def test_unlocked_quote_rejected(self, db, pricing_engine, distance_provider):
        quote = await quote_service.request_quote(
            db, pricing_engine, distance_provider, trip_request(PICKUP_AT), "cust-1", NOW
        )
        request = BookingCreateRequest(quote_id=quote.id, contact_phone="5551234567")
        with pytest.raises(StateError) as exc:
            await booking_service.create_booking(db, pricing_engine, distance_provider, request, "cust-1", NOW)
        assert exc.value.code == "QUOTE_NOT_LOCKED"

    async def test_direct_trip_is_priced(self, db, pricing_engine, distance_provider):
        request = BookingCreateRequest(trip=trip_request(PICKUP_AT), contact_phone="5551234567")
        booking, created = await booking_service.create_booking(
            db, pricing_engine, distance_provider, request, "cust-1", NOW
        )
        assert created
        assert booking.quote_id is None
        assert booking.fare_amount == Decimal("81.28")
        assert booking.pickup_address == "100 Main St"

    async def test_past_pickup_rejected(self, db, pricing_engine, distance_provider):
        request = BookingCreateRequest(trip=trip_request(NOW - timedelta(hours=1)), contact_phone="5551234567")
        with pytest.raises(ValidationError):
            await booking_service.create_booking(db, pricing_engine, distance_provider, request, "cust-1", NOW)

    async def test_too_many_passengers(self, db, pricing_engine, distance_provider):
        request = BookingCreateRequest(trip=trip_request(PICKUP_AT), contact_phone="5551234567",
                                       passenger_count=15)
        with pytest.raises(ValidationError) as exc:
            await booking_service.create_booking(db, pricing_engine, distance_provider, request, "cust-1", NOW)
        assert exc.value.field == "passenger_count"

    async def test_list_bookings(self, db, pricing_engine, distance_provider):
        await book_quote(db, pricing_engine, distance_provider)
        await book_quote(db, pricing_engine, distance_provider)
        await book_quote(db, pricing_engine, distance_provider, user_id="cust-2")
        bookings, total = await booking_service.list_bookings(db, "cust-1")
        assert total == 2
        assert {b.user_id for b in bookings} == {"cust-1"}
        _, confirmed = await booking_service.list_bookings(db, "cust-1", status="CONFIRMED")
        assert confirmed == 0

    async def test_reference_taken_at_commit_leaves_nothing(self, db, pricing_engine, distance_provider,
                                                            monkeypatch):
        first = await book_quote(db, pricing_engine, distance_provider)
        taken = first.confirmation.booking_reference

        async def unchecked(db, column, factory):
            return factory()

        # Another writer claims the reference between the lookup and the commit
        monkeypatch.setattr(booking_service, "_unique_reference", unchecked)
        monkeypatch.setattr(booking_service.references, "booking_reference", lambda now=None: taken)
        request = BookingCreateRequest(trip=trip_request(PICKUP_AT), contact_phone="5551234567")
        with pytest.raises(ConflictError):
            await booking_service.create_booking(db, pricing_engine, distance_provider, request, "cust-1", NOW)

        assert await db.scalar(select(func.count()).select_from(Booking)) == 1
        assert await db.scalar(select(func.count()).select_from(BookingConfirmation)) == 1
        assert len(await jobs(db, "booking_created")) == 1

    async def test_reference_space_exhausted(self, db, pricing_engine, distance_provider, monkeypatch):
        first = await book_quote(db, pricing_engine, distance_provider)
        taken = first.confirmation.booking_reference
        monkeypatch.setattr(booking_service.references, "booking_reference", lambda now=None: taken)

        request = BookingCreateRequest(trip=trip_request(PICKUP_AT), contact_phone="5551234567")
        with pytest.raises(ConflictError) as exc:
            await booking_service.create_booking(db, pricing_engine, distance_provider, request, "cust-1", NOW)
        assert exc.value.code == "REFERENCE_EXHAUSTED"
        assert await db.scalar(select(func.count()).select_from(Booking)) == 1
        assert await db.scalar(select(func.count()).select_from(BookingConfirmation)) == 1


@pytest.mark.asyncio
class TestModifications:
    async def test_datetime_change_reprices_and_charges_fee(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        late = datetime(2027, 3, 6, 23, 0, tzinfo=timezone.utc)
        mod = await modification_service.request_modification(
            db, pricing_engine, distance_provider, booking.id,
            ModificationRequest(changes=[DateTimeChange(new_pickup_datetime=late)], reason="flight moved"),
            "cust-1", NOW,
        )
        # Late-night surcharge: 95.00 + 7.96 tax
        assert mod.new_fare_amount == Decimal("102.96")
        assert mod.price_difference == Decimal("21.68")
        assert mod.modification_fee == Decimal("10.00")
        assert modification_service.requires_payment(mod)
        assert modification_service.new_total(mod) == Decimal("112.96")
        assert mod.status == "pending"

        # Nothing changes until applied
        await db.refresh(booking)
        assert booking.total_amount == Decimal("81.28")

        updated = await modification_service.apply_modification(
            db, pricing_engine, booking.id, mod.id, "cust-1", NOW
        )
        assert updated.total_amount == Decimal("112.96")
        assert updated.fare_amount == Decimal("102.96")
        assert updated.scheduled_at == late
        assert updated.modification_count == 1
        assert updated.is_modified
        assert updated.confirmation.modification_deadline == late - timedelta(hours=2)
        assert len(await jobs(db, "booking_modified")) == 1

    async def test_passenger_change_is_free(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        mod = await modification_service.request_modification(
            db, pricing_engine, distance_provider, booking.id,
            ModificationRequest(changes=[PassengerCountChange(passenger_count=4)]), "cust-1", NOW,
        )
        assert mod.price_difference == Decimal("0.00")
        assert mod.modification_fee == Decimal("0.00")
        assert not modification_service.requires_payment(mod)
        updated = await modification_service.apply_modification(
            db, pricing_engine, booking.id, mod.id, "cust-1", NOW
        )
        assert updated.passenger_count == 4

    async def test_dropping_trip_protection_is_a_credit(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider,
                                   enhancements=EnhancementSelection(trip_protection=True))
        mod = await modification_service.request_modification(
            db, pricing_engine, distance_provider, booking.id,
            ModificationRequest(changes=[EnhancementChange(enhancements=EnhancementSelection())]),
            "cust-1", NOW,
        )
        assert mod.price_difference == Decimal("-9.00")
        assert not modification_service.requires_payment(mod)
        updated = await modification_service.apply_modification(
            db, pricing_engine, booking.id, mod.id, "cust-1", NOW
        )
        assert not updated.trip_protection
        assert updated.total_amount == Decimal("81.28")

    async def test_deadline(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        with pytest.raises(StateError) as exc:
            await modification_service.request_modification(
                db, pricing_engine, distance_provider, booking.id,
                ModificationRequest(changes=[PassengerCountChange(passenger_count=2)]),
                "cust-1", PICKUP_AT - timedelta(hours=1),
            )
        assert exc.value.code == "MODIFICATION_DEADLINE_PASSED"

    async def test_modification_limit(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        for count in (2, 3, 4):
            mod = await modification_service.request_modification(
                db, pricing_engine, distance_provider, booking.id,
                ModificationRequest(changes=[PassengerCountChange(passenger_count=count)]), "cust-1", NOW,
            )
            await modification_service.apply_modification(db, pricing_engine, booking.id, mod.id, "cust-1", NOW)
        with pytest.raises(StateError) as exc:
            await modification_service.request_modification(
                db, pricing_engine, distance_provider, booking.id,
                ModificationRequest(changes=[PassengerCountChange(passenger_count=5)]), "cust-1", NOW,
            )
        assert exc.value.code == "MODIFICATION_LIMIT_REACHED"

    async def test_stale_modification_rejected(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider,
                                   enhancements=EnhancementSelection(trip_protection=True))
        credit = await modification_service.request_modification(
            db, pricing_engine, distance_provider, booking.id,
            ModificationRequest(changes=[EnhancementChange(enhancements=EnhancementSelection())]),
            "cust-1", NOW,
        )
        other = await modification_service.request_modification(
            db, pricing_engine, distance_provider, booking.id,
            ModificationRequest(changes=[PassengerCountChange(passenger_count=3)]), "cust-1", NOW,
        )
        await modification_service.apply_modification(db, pricing_engine, booking.id, credit.id, "cust-1", NOW)
        with pytest.raises(StateError) as exc:
            await modification_service.apply_modification(db, pricing_engine, booking.id, other.id, "cust-1", NOW)
        assert exc.value.code == "MODIFICATION_STALE"

    async def test_cannot_apply_twice(self, db, pricing_engine, distance_provider):
        booking = await book_quote(db, pricing_engine, distance_provider)
        mod = await modification_service.request_modification(
            db, pricing_engine, distance_provider, booking.id,
            ModificationRequest(changes=[PassengerCountChange(passenger_count=2)]), "cust-1", NOW,
        )
        await modification_service.apply_modification(db, pricing_engine, booking.id, mod.id, "cust-1", NOW)
        with pytest.raises(StateError) as exc:
            await modification_service.apply_modification(db, pricing_engine, booking.id, mod.id, "cust-1", NOW)
        assert exc.value.code == "MODIFICATION_APPLIED"

    async def test_cancelled_booking_cannot_be_modified(self, db, pricing_engine, distance_provider, gateway):
        booking = await book_quote(db, pricing_engine, distance_provider)
        await cancellation_service.cancel_booking(
            db, gateway, booking.id, CancellationRequest(), "cust-1", now=NOW
        )
        with pytest.raises(StateError) as exc:
            await modification_service.request_modification(
                db, pricing_engine, distance_provider, booking.id,
                ModificationRequest(changes=[PassengerCountChange(passenger_count=2)]), "cust-1", NOW,
            )
        assert exc.value.code == "BOOKING_NOT_MODIFIABLE"


@pytest.mark.asyncio
class TestCancellation:
    async def test_paid_booking_refunded_by_policy(self, db, pricing_engine, distance_provider, gateway):
        booking = await book_quote(db, pricing_engine, distance_provider)
        payment = await pay(db, gateway, booking)
        assert payment.status == "SUCCEEDED"

        # 26 hours before pickup
        cancellation = await cancellation_service.cancel_booking(
            db, gateway, booking.id, CancellationRequest(reason="changed_plans"), "cust-1", now=NOW
        )
        assert cancellation.refund_percentage == 100
        assert cancellation.cancellation_fee == Decimal("10.00")
        assert cancellation.refund_amount == Decimal("71.28")
        assert cancellation.refund_status == "completed"
        assert cancellation.refund_ref in gateway.refunds

        await db.refresh(booking)
        await db.refresh(payment)
        assert booking.status == "CANCELLED"
        assert payment.status == "PARTIALLY_REFUNDED"
        assert payment.refunded_amount == Decimal("71.28")
        assert len(await jobs(db, "booking_cancelled")) == 1

    async def test_unpaid_booking_has_nothing_to_refund(self, db, pricing_engine, distance_provider, gateway):
        booking = await book_quote(db, pricing_engine, distance_provider)
        cancellation = await cancellation_service.cancel_booking(
            db, gateway, booking.id, CancellationRequest(), "cust-1", now=NOW
        )
        assert cancellation.refund_amount == Decimal("0.00")
        assert cancellation.refund_status == "not_applicable"
        assert gateway.refunds == {}

    async def test_cancel_twice(self, db, pricing_engine, distance_provider, gateway):
        booking = await book_quote(db, pricing_engine, distance_provider)
        await cancellation_service.cancel_booking(db, gateway, booking.id, CancellationRequest(), "cust-1", now=NOW)
        with pytest.raises(StateError) as exc:
            await cancellation_service.cancel_booking(
                db, gateway, booking.id, CancellationRequest(), "cust-1", now=NOW
            )
        assert exc.value.code == "BOOKING_ALREADY_CANCELLED"

    async def test_refund_failure_keeps_cancellation_and_retries(self, db, pricing_engine, distance_provider):
        gateway = RefundOutageGateway()
        booking = await book_quote(db, pricing_engine, distance_provider,
                                   enhancements=EnhancementSelection(trip_protection=True))
        await pay(db, gateway, booking)

        cancellation = await cancellation_service.cancel_booking(
            db, gateway, booking.id, CancellationRequest(), "cust-1", now=PICKUP_AT - timedelta(hours=1)
        )
        assert cancellation.trip_protection_applied
        # 90.28 paid, less the 5.00 protected-cancellation fee
        assert cancellation.refund_amount == Decimal("85.28")
        assert cancellation.refund_status == "failed"
        assert cancellation.refund_attempts == 1
        await db.refresh(booking)
        assert booking.status == "CANCELLED"

        gateway.refunds_down = False
        completed = await cancellation_service.retry_failed_refunds(db, gateway, NOW)
        assert completed == 1
        await db.refresh(cancellation)
        assert cancellation.refund_status == "completed"
        assert cancellation.refund_attempts == 2

    async def test_refund_interrupted_mid_call_is_swept(self, db, pricing_engine, distance_provider):
        gateway = InterruptedRefundGateway()
        booking = await book_quote(db, pricing_engine, distance_provider)
        await pay(db, gateway, booking)

        with pytest.raises(RuntimeError):
            await cancellation_service.cancel_booking(
                db, gateway, booking.id, CancellationRequest(reason="weather"), "cust-1", now=NOW
            )
        cancellation = await cancellation_service.get_cancellation(db, booking.id, "cust-1")
        assert cancellation.refund_status == "processing"
        assert cancellation.refund_ref is None

        gateway.interrupted = False
        # Too recent: the original call may still be running
        assert await cancellation_service.retry_failed_refunds(db, gateway, utcnow()) == 0
        completed = await cancellation_service.retry_failed_refunds(db, gateway, utcnow() + timedelta(hours=1))
        assert completed == 1
        await db.refresh(cancellation)
        assert cancellation.refund_status == "completed"
        assert cancellation.refund_attempts == 2
        assert len(gateway.refunds) == 1

    async def test_get_cancellation(self, db, pricing_engine, distance_provider, gateway):
        booking = await book_quote(db, pricing_engine, distance_provider)
        with pytest.raises(NotFoundError):
            await cancellation_service.get_cancellation(db, booking.id, "cust-1")
        await cancellation_service.cancel_booking(db, gateway, booking.id, CancellationRequest(), "cust-1", now=NOW)
        found = await cancellation_service.get_cancellation(db, booking.id, "cust-1")
        assert found.booking_id == booking.id


@pytest.mark.asyncio
class TestTripFlow:
    async def test_driver_completes_trip(self, db, pricing_engine, distance_provider, gateway):
        driver = Driver(name="Dana Driver", phone="5550001111", status="available")
        db.add(driver)
        await db.commit()

        booking = await book_quote(db, pricing_engine, distance_provider)
        with pytest.raises(StateError):
            await booking_service.assign_driver(db, booking.id, driver.id)

        await pay(db, gateway, booking)
        await booking_service.assign_driver(db, booking.id, driver.id)
        started = await booking_service.start_trip(db, booking.id, driver.id)
        assert started.status == "IN_PROGRESS"
        await db.refresh(driver)
        assert driver.status == "on_trip"
        assert driver.current_booking_id == booking.id

        done = await booking_service.complete_trip(db, booking.id, driver.id)
        assert done.status == "COMPLETED"
        await db.refresh(driver)
        assert driver.status == "available"
        assert driver.current_booking_id is None

        with pytest.raises(StateError):
            await cancellation_service.cancel_booking(
                db, gateway, booking.id, CancellationRequest(), "cust-1", now=NOW
            )

        assert await booking_service.archive_completed(db, PICKUP_AT + timedelta(days=30)) == 0
        assert await booking_service.archive_completed(db, PICKUP_AT + timedelta(days=91)) == 1
        _, visible = await booking_service.list_bookings(db, "cust-1")
        _, everything = await booking_service.list_bookings(db, "cust-1", include_archived=True)
        assert (visible, everything) == (0, 1)

    async def test_unavailable_driver(self, db, pricing_engine, distance_provider, gateway):
        driver = Driver(name="Off Duty", phone="5550002222", status="offline")
        db.add(driver)
        await db.commit()
        booking = await book_quote(db, pricing_engine, distance_provider)
        await pay(db, gateway, booking)
        with pytest.raises(StateError) as exc:
            await booking_service.assign_driver(db, booking.id, driver.id)
        assert exc.value.code == "DRIVER_UNAVAILABLE"

    async def test_other_driver_cannot_start(self, db, pricing_engine, distance_provider, gateway):
        driver = Driver(name="Dana Driver", phone="5550003333", status="available")
        db.add(driver)
        await db.commit()
        booking = await book_quote(db, pricing_engine, distance_provider)
        await pay(db, gateway, booking)
        await booking_service.assign_driver(db, booking.id, driver.id)
        with pytest.raises(NotFoundError):
            await booking_service.start_trip(db, booking.id, "someone-else")

    async def test_vehicle_too_small(self, db, pricing_engine, distance_provider, gateway):
        driver = Driver(name="Coupe Driver", phone="5550004444", status="available", seats=2)
        db.add(driver)
        await db.commit()
        booking = await book_quote(db, pricing_engine, distance_provider, passenger_count=3)
        await pay(db, gateway, booking)
        with pytest.raises(StateError) as exc:
            await booking_service.assign_driver(db, booking.id, driver.id)
        assert exc.value.code == "DRIVER_CAPACITY"

    async def test_cancel_mid_trip_frees_driver(self, db, pricing_engine, distance_provider, gateway):
        driver = Driver(name="Dana Driver", phone="5550005555", status="available")
        db.add(driver)
        await db.commit()
        booking = await book_quote(db, pricing_engine, distance_provider)
        await pay(db, gateway, booking)
        await booking_service.assign_driver(db, booking.id, driver.id)
        await booking_service.start_trip(db, booking.id, driver.id)

        await cancellation_service.cancel_booking(
            db, gateway, booking.id, CancellationRequest(reason="vehicle_breakdown"), "cust-1", now=NOW
        )
        await db.refresh(driver)
        assert (driver.status, driver.current_booking_id) == ("available", None)
