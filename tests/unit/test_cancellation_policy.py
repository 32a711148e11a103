"""
Unit tests for the cancellation refund policy.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.services.cancellation import calculate_refund, policy_summary

PICKUP = datetime(2027, 3, 6, 12, 0, tzinfo=timezone.utc)
PAID = Decimal("120.30")


class TestCalculateRefund:
    def test_more_than_a_day_out_is_full_refund_less_fee(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(hours=30))
        assert d.refund_percentage == 100
        assert d.cancellation_fee == Decimal("10.00")
        assert d.refund_amount == Decimal("110.30")
        assert not d.trip_protection_applied

    def test_exactly_24_hours_is_full_refund(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(hours=24))
        assert d.refund_percentage == 100

    def test_between_2_and_24_hours_is_half(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(hours=10))
        assert d.refund_percentage == 50
        # 60.15 gross, less 10.00
        assert d.refund_amount == Decimal("50.15")

    def test_last_minute_refunds_nothing(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(hours=1))
        assert d.refund_percentage == 0
        assert d.cancellation_fee == Decimal("25.00")
        assert d.refund_amount == Decimal("0.00")

    def test_fee_never_makes_refund_negative(self):
        d = calculate_refund(Decimal("15.00"), PICKUP, PICKUP - timedelta(hours=5))
        # 50% of 15 is 7.50, below the 10.00 fee
        assert d.refund_amount == Decimal("0.00")

    @pytest.mark.parametrize("reason", ["medical_emergency", "weather", "vehicle_breakdown"])
    def test_emergency_reasons_refund_everything(self, reason):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(minutes=30), reason=reason)
        assert d.refund_percentage == 100
        assert d.cancellation_fee == Decimal("0.00")
        assert d.refund_amount == PAID

    def test_unknown_reason_gets_normal_policy(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(minutes=30), reason="changed_plans")
        assert d.refund_percentage == 0

    def test_trip_protection_overrides_timing(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(minutes=30), trip_protection=True)
        assert d.refund_percentage == 100
        assert d.cancellation_fee == Decimal("5.00")
        assert d.refund_amount == Decimal("115.30")
        assert d.trip_protection_applied

    def test_emergency_wins_over_trip_protection(self):
        d = calculate_refund(PAID, PICKUP, PICKUP - timedelta(hours=1), reason="weather", trip_protection=True)
        assert d.cancellation_fee == Decimal("0.00")
        assert not d.trip_protection_applied

    def test_unpaid_booking_refunds_nothing(self):
        d = calculate_refund(Decimal("0.00"), PICKUP, PICKUP - timedelta(hours=48))
        assert d.refund_amount == Decimal("0.00")


def test_policy_summary():
    summary = policy_summary()
    assert summary["full_refund_hours"] == 24
    assert summary["partial_refund_hours"] == 2
    assert summary["emergency_reasons"] == ["medical_emergency", "vehicle_breakdown", "weather"]
