"""
Quote pricing engine.

Pure calculation: a BookingRequest plus the trip distance and the current
PricingConfig snapshot produce an itemized QuoteBreakdown. No I/O happens
here; distance lookup and persistence belong to the caller.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from app.config import get_settings
from app.exceptions import ValidationError
from app.schemas.pricing import (
    DEFAULT_PRICING_CONFIG,
    BookingRequest,
    Discount,
    DistanceInfo,
    PriceCalculationResult,
    PricingConfig,
    QuoteBreakdown,
    ServiceType,
    Surcharge,
    Taxes,
)
from app.services import references

logger = logging.getLogger(__name__)
settings = get_settings()

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive datetimes are wall-clock time in the pricing timezone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


class _ServiceCharge:
    """Intermediate result of the per-service-type calculation."""

    def __init__(self, base: Decimal, distance: Decimal, time: Decimal = ZERO) -> None:
        self.base = base
        self.distance = distance
        self.time = time
        self.surcharges: list[Surcharge] = []
        self.discounts: list[Discount] = []

    @property
    def subtotal(self) -> Decimal:
        """Pre-surcharge basis that customer discounts are taken against."""
        adjustments = sum((s.amount for s in self.surcharges), ZERO)
        reductions = sum((d.amount for d in self.discounts), ZERO)
        return self.base + self.distance + self.time + adjustments - reductions


class PricingEngine:
    """
    Holds one immutable PricingConfig snapshot. ``calculate_price`` reads the
    snapshot reference once per call, so a concurrent ``swap_config`` is never
    observed half-way through a calculation.
    """

    def __init__(
        self,
        config: PricingConfig = DEFAULT_PRICING_CONFIG,
        reference_factory: Callable[[], str] = references.quote_reference,
    ) -> None:
        self._config = config
        self._reference_factory = reference_factory

    @property
    def config(self) -> PricingConfig:
        return self._config

    def swap_config(self, new_config: PricingConfig, expected_version: Optional[str] = None) -> bool:
        """
        Replace the active snapshot. With ``expected_version`` the swap only
        happens if the current snapshot still carries that version.
        """
        current = self._config
        if expected_version is not None and current.version != expected_version:
            return False
        self._config = new_config
        if current.version != new_config.version:
            logger.info("Pricing config swapped: %s -> %s", current.version, new_config.version)
        return True

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def calculate_price(
        self,
        request: BookingRequest,
        distance: Optional[DistanceInfo] = None,
        now: Optional[datetime] = None,
    ) -> PriceCalculationResult:
        config = self._config
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        tz = ZoneInfo(config.calendar.timezone)

        self._validate(request, distance, config, tz)
        warnings: list[str] = []

        pickup = to_local(request.pickup_datetime, tz)

        if request.service_type == ServiceType.ONE_WAY:
            charge = self._one_way(distance, config)
            if distance.miles > config.one_way.extended_trip_miles:
                warnings.append(
                    f"Trip of {distance.miles:.1f} miles exceeds "
                    f"{config.one_way.extended_trip_miles} miles; extended-trip handling may apply"
                )
        elif request.service_type == ServiceType.ROUNDTRIP:
            charge = self._roundtrip(distance, pickup, to_local(request.return_datetime, tz), config)
        else:
            charge = self._hourly(request.duration_hours, distance, config)

        discounts = self._customer_discounts(request, charge.subtotal, pickup, now, config)
        surcharges = self._calendar_surcharges(request, pickup, config)

        all_surcharges = tuple(charge.surcharges + surcharges)
        all_discounts = tuple(charge.discounts + discounts)
        subtotal = money(
            charge.base + charge.distance + charge.time
            + sum((s.amount for s in all_surcharges), ZERO)
            - sum((d.amount for d in all_discounts), ZERO)
        )

        sales_tax = money(subtotal * config.taxes.sales_tax_rate)
        airport_fee = None
        if any(s.type == "airport" for s in all_surcharges):
            airport_fee = money(subtotal * config.taxes.airport_fee_rate)
        taxes = Taxes(
            sales_tax=sales_tax,
            airport_fee=airport_fee,
            total=sales_tax + (airport_fee or ZERO),
        )
        gratuity = ZERO

        breakdown = QuoteBreakdown(
            base_rate=charge.base,
            distance_charge=charge.distance,
            time_charges=charge.time,
            surcharges=all_surcharges,
            discounts=all_discounts,
            subtotal=subtotal,
            taxes=taxes,
            gratuity=gratuity,
            total=subtotal + taxes.total + gratuity,
            valid_until=now + timedelta(minutes=settings.quote_ttl_minutes),
            booking_reference=self._reference_factory(),
            config_version=config.version,
        )
        return PriceCalculationResult(breakdown=breakdown, warnings=tuple(warnings))

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------

    @staticmethod
    def _validate(request: BookingRequest, distance: Optional[DistanceInfo], config: PricingConfig, tz: ZoneInfo) -> None:
        if request.pickup_location is None:
            raise ValidationError("Pickup location is required", field="pickup_location")
        if request.pickup_datetime is None:
            raise ValidationError("Pickup date and time are required", field="pickup_datetime")

        service = request.service_type
        if service in (ServiceType.ONE_WAY, ServiceType.ROUNDTRIP):
            if request.dropoff_location is None:
                raise ValidationError(
                    f"Dropoff location is required for {service.value} trips", field="dropoff_location"
                )
            if distance is None:
                raise ValidationError("Trip distance is required", field="distance")

        if service == ServiceType.ROUNDTRIP:
            if request.return_datetime is None:
                raise ValidationError("Return date and time are required for round trips", field="return_datetime")
            if to_local(request.return_datetime, tz) <= to_local(request.pickup_datetime, tz):
                raise ValidationError("Return must be after pickup", field="return_datetime")

        if service == ServiceType.HOURLY:
            minimum = config.hourly.minimum_hours
            if request.duration_hours is None or request.duration_hours < minimum:
                raise ValidationError(
                    f"Hourly service requires at least {minimum} hours", field="duration_hours"
                )

        if service == ServiceType.ONE_WAY and distance.miles > config.one_way.maximum_distance_miles:
            raise ValidationError(
                f"One-way trips are limited to {config.one_way.maximum_distance_miles} miles",
                field="distance",
                details={"miles": f"{distance.miles:.2f}"},
            )

    # -----------------------------------------------------------------------
    # Service types
    # -----------------------------------------------------------------------

    @staticmethod
    def _one_way(distance: DistanceInfo, config: PricingConfig) -> _ServiceCharge:
        rates = config.one_way
        charge = _ServiceCharge(
            base=money(rates.base_rate),
            distance=money(distance.miles * rates.per_mile_rate),
        )
        shortfall = rates.minimum_fare - (charge.base + charge.distance)
        if shortfall > 0:
            charge.surcharges.append(Surcharge(
                type="minimum_fare",
                name="Minimum Fare Adjustment",
                amount=money(shortfall),
                description=f"One-way fares start at ${rates.minimum_fare}",
            ))
        return charge

    @staticmethod
    def _roundtrip(distance: DistanceInfo, pickup: datetime, return_at: datetime, config: PricingConfig) -> _ServiceCharge:
        one_way = config.one_way
        rates = config.roundtrip
        base = money(one_way.base_rate * rates.multiplier)
        dist = money(distance.miles * one_way.per_mile_rate * rates.multiplier)

        wait_hours = Decimal(str((return_at - pickup).total_seconds())) / Decimal(3600)
        time = ZERO
        if wait_hours > rates.free_wait_hours:
            time = money((wait_hours - rates.free_wait_hours) * rates.wait_time_rate)

        charge = _ServiceCharge(base=base, distance=dist, time=time)
        if pickup.date() == return_at.date():
            charge.discounts.append(Discount(
                type="same_day",
                name="Same Day Roundtrip",
                amount=money((base + dist) * rates.same_day_discount),
                percentage=rates.same_day_discount * 100,
                description="Pickup and return on the same day",
            ))
        return charge

    @staticmethod
    def _hourly(hours: Decimal, distance: Optional[DistanceInfo], config: PricingConfig) -> _ServiceCharge:
        rates = config.hourly
        regular = min(hours, rates.overtime_after_hours)
        overtime = max(hours - rates.overtime_after_hours, Decimal(0))
        base = money(regular * rates.base_hourly_rate + overtime * rates.overtime_rate)

        excess = ZERO
        if distance is not None:
            allowance = hours * rates.included_miles_per_hour
            if distance.miles > allowance:
                excess = money((distance.miles - allowance) * rates.excess_mile_rate)
        return _ServiceCharge(base=base, distance=excess)

    # -----------------------------------------------------------------------
    # Surcharges and discounts
    # -----------------------------------------------------------------------

    @staticmethod
    def _calendar_surcharges(request: BookingRequest, pickup: datetime, config: PricingConfig) -> list[Surcharge]:
        rates = config.surcharges
        calendar = config.calendar
        lines: list[Surcharge] = []

        if request.touches_airport:
            lines.append(Surcharge(type="airport", name="Airport Fee", amount=money(rates.airport),
                                   description="Pickup or dropoff at an airport"))
        if calendar.late_night.contains(pickup.hour):
            lines.append(Surcharge(type="late_night", name="Late Night", amount=money(rates.late_night),
                                   description="Pickup between 10 PM and 6 AM"))
        if pickup.date() in calendar.holidays:
            lines.append(Surcharge(type="holiday", name="Holiday", amount=money(rates.holiday),
                                   description=f"Pickup on {pickup.date().isoformat()}"))
        in_peak_window = calendar.peak_morning.contains(pickup.hour) or calendar.peak_evening.contains(pickup.hour)
        if pickup.weekday() in calendar.peak_weekdays and in_peak_window:
            lines.append(Surcharge(type="peak_hours", name="Peak Hours", amount=money(rates.peak_hours),
                                   description="Weekday rush hour pickup"))
        return lines

    @staticmethod
    def _customer_discounts(
        request: BookingRequest,
        basis: Decimal,
        pickup: datetime,
        now: datetime,
        config: PricingConfig,
    ) -> list[Discount]:
        rates = config.discounts
        lines: list[Discount] = []

        if request.corporate_account:
            lines.append(Discount(type="corporate", name="Corporate Account", amount=money(basis * rates.corporate),
                                  percentage=rates.corporate * 100))
        elif request.is_returning_customer:
            lines.append(Discount(type="loyalty", name="Returning Customer", amount=money(basis * rates.loyalty),
                                  percentage=rates.loyalty * 100))

        if pickup - now >= timedelta(hours=rates.advance_booking_hours):
            lines.append(Discount(type="advance_booking", name="Advance Booking",
                                  amount=money(basis * rates.advance_booking),
                                  percentage=rates.advance_booking * 100,
                                  description=f"Booked {rates.advance_booking_hours}+ hours ahead"))
        return lines
