"""
Unit tests for the pricing engine (service-type fares, surcharges, discounts and taxes).
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.exceptions import ValidationError
from app.schemas.pricing import (
    BookingRequest, CalendarRules, DistanceInfo, LocationInfo, PricingConfig, ServiceType,
)
from app.services.pricing import PricingEngine, money

UTC_CONFIG = PricingConfig(version="test-utc", calendar=CalendarRules(timezone="UTC"))

# Friday, well clear of the default holiday calendar
NOW = datetime(2027, 3, 5, 10, 0, tzinfo=timezone.utc)
SATURDAY_NOON = datetime(2027, 3, 6, 12, 0, tzinfo=timezone.utc)

PICKUP = LocationInfo(address="100 Main St", lat=34.05, lng=-118.25)
DROPOFF = LocationInfo(address="200 Ocean Ave", lat=34.01, lng=-118.49)
AIRPORT = LocationInfo(address="LAX Terminal 4", lat=33.94, lng=-118.40, is_airport=True)


def miles(n) -> DistanceInfo:
    meters = int(round(Decimal(str(n)) * Decimal("1609.34")))
    return DistanceInfo(distance_meters=meters, duration_seconds=600)


def one_way(pickup_at=SATURDAY_NOON, **kwargs) -> BookingRequest:
    return BookingRequest(
        service_type=ServiceType.ONE_WAY,
        pickup_location=kwargs.pop("pickup_location", PICKUP),
        dropoff_location=kwargs.pop("dropoff_location", DROPOFF),
        pickup_datetime=pickup_at,
        **kwargs,
    )


@pytest.fixture
def engine():
    return PricingEngine(UTC_CONFIG, reference_factory=lambda: "QT-TESTREF1")


class TestOneWay:
    def test_short_trip_is_floored_to_minimum_fare(self, engine):
        result = engine.calculate_price(one_way(), miles(3), NOW)
        b = result.breakdown
        assert b.base_rate == Decimal("25.00")
        assert b.distance_charge == Decimal("7.50")
        assert [s.type for s in b.surcharges] == ["minimum_fare"]
        assert b.surcharges[0].amount == Decimal("2.50")
        assert b.subtotal == Decimal("35.00")
        assert b.taxes.sales_tax == Decimal("2.93")
        assert b.taxes.airport_fee is None
        assert b.total == Decimal("37.93")

    def test_above_minimum_has_no_adjustment(self, engine):
        b = engine.calculate_price(one_way(), miles(20), NOW).breakdown
        assert b.distance_charge == Decimal("50.00")
        assert b.surcharges == ()
        assert b.subtotal == Decimal("75.00")

    def test_airport_surcharge_and_fee(self, engine):
        b = engine.calculate_price(one_way(dropoff_location=AIRPORT), miles(3), NOW).breakdown
        assert {s.type for s in b.surcharges} == {"minimum_fare", "airport"}
        assert b.subtotal == Decimal("50.00")
        assert b.taxes.sales_tax == Decimal("4.19")
        assert b.taxes.airport_fee == Decimal("1.00")
        assert b.taxes.total == Decimal("5.19")
        assert b.total == Decimal("55.19")

    def test_extended_trip_warns_but_prices(self, engine):
        result = engine.calculate_price(one_way(), miles(90), NOW)
        assert len(result.warnings) == 1
        assert "80" in result.warnings[0]
        assert result.breakdown.distance_charge == Decimal("225.00")

    def test_over_maximum_distance_rejected(self, engine):
        with pytest.raises(ValidationError) as exc:
            engine.calculate_price(one_way(), miles(101), NOW)
        assert exc.value.field == "distance"


class TestRoundtrip:
    def test_same_day_discount_is_an_itemized_line(self, engine):
        request = BookingRequest(
            service_type=ServiceType.ROUNDTRIP,
            pickup_location=PICKUP,
            dropoff_location=DROPOFF,
            pickup_datetime=SATURDAY_NOON,
            return_datetime=SATURDAY_NOON + timedelta(hours=3),
        )
        b = engine.calculate_price(request, miles(10), NOW).breakdown
        assert b.base_rate == Decimal("45.00")
        assert b.distance_charge == Decimal("45.00")
        # 3h wait, 2h free
        assert b.time_charges == Decimal("30.00")
        assert [d.type for d in b.discounts] == ["same_day"]
        assert b.discounts[0].amount == Decimal("9.00")
        assert b.subtotal == Decimal("111.00")
        assert b.total == Decimal("120.30")

    def test_overnight_return_gets_no_same_day_discount(self, engine):
        request = BookingRequest(
            service_type=ServiceType.ROUNDTRIP,
            pickup_location=PICKUP,
            dropoff_location=DROPOFF,
            pickup_datetime=SATURDAY_NOON,
            return_datetime=SATURDAY_NOON + timedelta(days=1),
        )
        b = engine.calculate_price(request, miles(10), NOW).breakdown
        assert b.discounts == ()

    def test_return_before_pickup_rejected(self, engine):
        request = BookingRequest(
            service_type=ServiceType.ROUNDTRIP,
            pickup_location=PICKUP,
            dropoff_location=DROPOFF,
            pickup_datetime=SATURDAY_NOON,
            return_datetime=SATURDAY_NOON - timedelta(hours=1),
        )
        with pytest.raises(ValidationError) as exc:
            engine.calculate_price(request, miles(10), NOW)
        assert exc.value.field == "return_datetime"

    def test_missing_return_rejected(self, engine):
        request = BookingRequest(
            service_type=ServiceType.ROUNDTRIP,
            pickup_location=PICKUP,
            dropoff_location=DROPOFF,
            pickup_datetime=SATURDAY_NOON,
        )
        with pytest.raises(ValidationError):
            engine.calculate_price(request, miles(10), NOW)


class TestHourly:
    def _request(self, hours) -> BookingRequest:
        return BookingRequest(
            service_type=ServiceType.HOURLY,
            pickup_location=PICKUP,
            pickup_datetime=SATURDAY_NOON,
            duration_hours=Decimal(str(hours)),
        )

    def test_overtime_after_eight_hours(self, engine):
        b = engine.calculate_price(self._request(10), None, NOW).breakdown
        # 8 * 75 + 2 * 90
        assert b.base_rate == Decimal("780.00")
        assert b.distance_charge == Decimal("0.00")
        assert b.subtotal == Decimal("780.00")

    def test_minimum_hours_accepted(self, engine):
        b = engine.calculate_price(self._request(2), None, NOW).breakdown
        assert b.base_rate == Decimal("150.00")

    def test_below_minimum_hours_rejected(self, engine):
        with pytest.raises(ValidationError) as exc:
            engine.calculate_price(self._request(1.5), None, NOW)
        assert exc.value.field == "duration_hours"

    def test_excess_miles_charged(self, engine):
        request = self._request(2).model_copy(update={"dropoff_location": DROPOFF})
        b = engine.calculate_price(request, miles(70), NOW).breakdown
        # 60 miles included, 10 excess at 1.50
        assert b.distance_charge == Decimal("15.00")


class TestSurcharges:
    @pytest.mark.parametrize("pickup_at, expected", [
        (datetime(2027, 3, 6, 22, 0, tzinfo=timezone.utc), True),
        (datetime(2027, 3, 7, 5, 59, tzinfo=timezone.utc), True),
        (datetime(2027, 3, 7, 6, 0, tzinfo=timezone.utc), False),
        (datetime(2027, 3, 6, 21, 59, tzinfo=timezone.utc), False),
    ])
    def test_late_night_window(self, engine, pickup_at, expected):
        b = engine.calculate_price(one_way(pickup_at), miles(20), NOW).breakdown
        assert any(s.type == "late_night" for s in b.surcharges) is expected

    def test_weekday_peak(self, engine):
        monday_rush = datetime(2027, 3, 8, 7, 30, tzinfo=timezone.utc)
        b = engine.calculate_price(one_way(monday_rush), miles(20), NOW).breakdown
        assert any(s.type == "peak_hours" for s in b.surcharges)

    def test_weekend_rush_hour_is_not_peak(self, engine):
        saturday_rush = datetime(2027, 3, 6, 7, 30, tzinfo=timezone.utc)
        b = engine.calculate_price(one_way(saturday_rush), miles(20), NOW).breakdown
        assert not any(s.type == "peak_hours" for s in b.surcharges)

    def test_holiday(self, engine):
        christmas = datetime(2026, 12, 25, 12, 0, tzinfo=timezone.utc)
        now = christmas - timedelta(hours=12)
        b = engine.calculate_price(one_way(christmas), miles(20), now).breakdown
        holiday = [s for s in b.surcharges if s.type == "holiday"]
        assert holiday and holiday[0].amount == Decimal("25.00")

    def test_calendar_uses_pricing_timezone(self):
        engine = PricingEngine(PricingConfig(version="la"))
        # 21:30 and 22:30 Pacific the evening before
        early = datetime(2027, 3, 7, 5, 30, tzinfo=timezone.utc)
        late = datetime(2027, 3, 7, 6, 30, tzinfo=timezone.utc)
        b_early = engine.calculate_price(one_way(early), miles(20), NOW).breakdown
        b_late = engine.calculate_price(one_way(late), miles(20), NOW).breakdown
        assert not any(s.type == "late_night" for s in b_early.surcharges)
        assert any(s.type == "late_night" for s in b_late.surcharges)


class TestDiscounts:
    def test_corporate_beats_loyalty(self, engine):
        request = one_way(corporate_account=True, is_returning_customer=True)
        b = engine.calculate_price(request, miles(20), NOW).breakdown
        assert [d.type for d in b.discounts] == ["corporate"]
        assert b.discounts[0].amount == Decimal("11.25")
        assert b.subtotal == Decimal("63.75")

    def test_loyalty_for_returning_customer(self, engine):
        b = engine.calculate_price(one_way(is_returning_customer=True), miles(20), NOW).breakdown
        assert [d.type for d in b.discounts] == ["loyalty"]
        assert b.discounts[0].amount == Decimal("7.50")

    def test_advance_booking_stacks(self, engine):
        pickup = NOW + timedelta(hours=72)
        b = engine.calculate_price(one_way(pickup, corporate_account=True), miles(20), NOW).breakdown
        assert [d.type for d in b.discounts] == ["corporate", "advance_booking"]
        assert b.discounts[1].amount == Decimal("3.75")
        assert b.subtotal == Decimal("60.00")

    def test_advance_booking_threshold(self, engine):
        just_short = NOW + timedelta(hours=47, minutes=59)
        b = engine.calculate_price(one_way(just_short), miles(20), NOW).breakdown
        assert not any(d.type == "advance_booking" for d in b.discounts)

    def test_discounts_ignore_calendar_surcharges(self, engine):
        late = datetime(2027, 3, 6, 23, 0, tzinfo=timezone.utc)
        b = engine.calculate_price(one_way(late, corporate_account=True), miles(20), NOW).breakdown
        # 15% of the 75.00 service subtotal, not of 95.00
        assert b.discounts[0].amount == Decimal("11.25")
        assert b.subtotal == Decimal("83.75")


class TestEngine:
    def test_total_is_sum_of_parts(self, engine):
        request = one_way(datetime(2027, 3, 8, 7, 30, tzinfo=timezone.utc),
                          dropoff_location=AIRPORT, corporate_account=True)
        b = engine.calculate_price(request, miles(42.7), NOW).breakdown
        assert b.total == b.subtotal + b.taxes.total + b.gratuity
        for amount in (b.subtotal, b.taxes.sales_tax, b.taxes.airport_fee, b.total):
            assert amount == money(amount)

    def test_deterministic(self, engine):
        first = engine.calculate_price(one_way(), miles(33.3), NOW)
        second = engine.calculate_price(one_way(), miles(33.3), NOW)
        assert first == second

    def test_quote_validity_window(self, engine):
        b = engine.calculate_price(one_way(), miles(20), NOW).breakdown
        assert b.valid_until == NOW + timedelta(minutes=30)
        assert b.config_version == "test-utc"
        assert b.booking_reference == "QT-TESTREF1"

    def test_missing_pickup_rejected(self, engine):
        request = BookingRequest(service_type=ServiceType.ONE_WAY, dropoff_location=DROPOFF,
                                 pickup_datetime=SATURDAY_NOON)
        with pytest.raises(ValidationError) as exc:
            engine.calculate_price(request, miles(5), NOW)
        assert exc.value.field == "pickup_location"

    def test_missing_dropoff_rejected(self, engine):
        request = BookingRequest(service_type=ServiceType.ONE_WAY, pickup_location=PICKUP,
                                 pickup_datetime=SATURDAY_NOON)
        with pytest.raises(ValidationError) as exc:
            engine.calculate_price(request, None, NOW)
        assert exc.value.field == "dropoff_location"

    def test_swap_config(self, engine):
        cheaper = UTC_CONFIG.model_copy(update={
            "version": "test-cheap",
            "one_way": UTC_CONFIG.one_way.model_copy(update={"base_rate": Decimal("20.00")}),
        })
        assert engine.swap_config(cheaper, expected_version="test-utc")
        assert engine.config.version == "test-cheap"
        b = engine.calculate_price(one_way(), miles(20), NOW).breakdown
        assert b.base_rate == Decimal("20.00")
        assert b.config_version == "test-cheap"

    def test_swap_config_rejects_stale_expectation(self, engine):
        other = UTC_CONFIG.model_copy(update={"version": "other"})
        assert not engine.swap_config(other, expected_version="not-current")
        assert engine.config.version == "test-utc"
