"""
Pricing value objects: the versioned rate table, trip description and the
itemized quote breakdown produced by the pricing engine.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

METERS_PER_MILE = Decimal("1609.34")


class ServiceType(str, Enum):
    ONE_WAY = "ONE_WAY"
    ROUNDTRIP = "ROUNDTRIP"
    HOURLY = "HOURLY"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Rate table
# ---------------------------------------------------------------------------

class OneWayRates(_Frozen):
    base_rate: Decimal = Decimal("25.00")
    per_mile_rate: Decimal = Decimal("2.50")
    minimum_fare: Decimal = Decimal("35.00")
    maximum_distance_miles: Decimal = Decimal("100")
    extended_trip_miles: Decimal = Decimal("80")   # advisory only


class RoundtripRates(_Frozen):
    multiplier: Decimal = Decimal("1.8")
    wait_time_rate: Decimal = Decimal("30.00")    # per hour
    free_wait_hours: Decimal = Decimal("2")
    same_day_discount: Decimal = Decimal("0.10")


class HourlyRates(_Frozen):
    base_hourly_rate: Decimal = Decimal("75.00")
    minimum_hours: Decimal = Decimal("2")
    overtime_after_hours: Decimal = Decimal("8")
    overtime_rate: Decimal = Decimal("90.00")
    included_miles_per_hour: Decimal = Decimal("30")
    excess_mile_rate: Decimal = Decimal("1.50")


class SurchargeRates(_Frozen):
    airport: Decimal = Decimal("15.00")
    late_night: Decimal = Decimal("20.00")
    holiday: Decimal = Decimal("25.00")
    peak_hours: Decimal = Decimal("15.00")


class DiscountRates(_Frozen):
    corporate: Decimal = Decimal("0.15")
    loyalty: Decimal = Decimal("0.10")
    advance_booking: Decimal = Decimal("0.05")
    advance_booking_hours: int = 48


class TaxRates(_Frozen):
    sales_tax_rate: Decimal = Decimal("0.08375")
    airport_fee_rate: Decimal = Decimal("0.02")


class HourWindow(_Frozen):
    """[start, end) in local hours; wraps midnight when start > end."""
    start: int = Field(..., ge=0, le=23)
    end: int = Field(..., ge=0, le=24)

    def contains(self, hour: int) -> bool:
        if self.start <= self.end:
            return self.start <= hour < self.end
        return hour >= self.start or hour < self.end


DEFAULT_HOLIDAYS: tuple[date, ...] = (
    date(2025, 1, 1), date(2025, 5, 26), date(2025, 7, 4), date(2025, 9, 1),
    date(2025, 11, 27), date(2025, 11, 28), date(2025, 12, 24), date(2025, 12, 25),
    date(2025, 12, 31),
    date(2026, 1, 1), date(2026, 5, 25), date(2026, 7, 4), date(2026, 9, 7),
    date(2026, 11, 26), date(2026, 11, 27), date(2026, 12, 24), date(2026, 12, 25),
    date(2026, 12, 31),
)


class CalendarRules(_Frozen):
    timezone: str = "America/Los_Angeles"
    holidays: tuple[date, ...] = DEFAULT_HOLIDAYS
    late_night: HourWindow = HourWindow(start=22, end=6)
    peak_morning: HourWindow = HourWindow(start=7, end=9)
    peak_evening: HourWindow = HourWindow(start=17, end=19)
    peak_weekdays: tuple[int, ...] = (0, 1, 2, 3, 4)   # Monday == 0


class PricingConfig(_Frozen):
    """One immutable version of the rate table."""
    version: str = "default"
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    one_way: OneWayRates = OneWayRates()
    roundtrip: RoundtripRates = RoundtripRates()
    hourly: HourlyRates = HourlyRates()
    surcharges: SurchargeRates = SurchargeRates()
    discounts: DiscountRates = DiscountRates()
    taxes: TaxRates = TaxRates()
    calendar: CalendarRules = CalendarRules()


DEFAULT_PRICING_CONFIG = PricingConfig()


# ---------------------------------------------------------------------------
# Trip description
# ---------------------------------------------------------------------------

class LocationInfo(_Frozen):
    address: str = Field(..., min_length=1, max_length=500)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    place_id: Optional[str] = None
    is_airport: bool = False


class DistanceInfo(_Frozen):
    distance_meters: int = Field(..., ge=0)
    duration_seconds: int = Field(..., ge=0)
    distance_text: str = ""
    duration_text: str = ""

    @property
    def miles(self) -> Decimal:
        return Decimal(self.distance_meters) / METERS_PER_MILE


class BookingRequest(BaseModel):
    """
    A prospective trip. ``is_returning_customer`` is derived server-side from
    the caller's completed bookings; any client-supplied value is replaced.
    """
    service_type: ServiceType
    pickup_location: Optional[LocationInfo] = None
    dropoff_location: Optional[LocationInfo] = None
    pickup_datetime: Optional[datetime] = None
    return_datetime: Optional[datetime] = None
    duration_hours: Optional[Decimal] = Field(default=None, gt=0, le=24)
    special_instructions: Optional[str] = Field(default=None, max_length=1000)
    corporate_account: bool = False
    is_returning_customer: bool = False

    @property
    def touches_airport(self) -> bool:
        pickup = self.pickup_location is not None and self.pickup_location.is_airport
        dropoff = self.dropoff_location is not None and self.dropoff_location.is_airport
        return pickup or dropoff

    @property
    def needs_distance(self) -> bool:
        return self.dropoff_location is not None and self.pickup_location is not None


# ---------------------------------------------------------------------------
# Breakdown
# ---------------------------------------------------------------------------

class Surcharge(_Frozen):
    type: str
    name: str
    amount: Decimal
    description: Optional[str] = None


class Discount(_Frozen):
    type: str
    name: str
    amount: Decimal
    percentage: Optional[Decimal] = None
    description: Optional[str] = None


class Taxes(_Frozen):
    sales_tax: Decimal
    airport_fee: Optional[Decimal] = None
    total: Decimal


class QuoteBreakdown(_Frozen):
    """
    Itemised price of one trip.

    When the fare falls below the vehicle class minimum, the top-up appears
    as a ``minimum_fare`` entry in ``surcharges``; it is not a calendar or
    location surcharge and ``base_rate`` keeps the unfloored rate.
    """
    base_rate: Decimal
    distance_charge: Decimal
    time_charges: Decimal
    surcharges: tuple[Surcharge, ...] = ()
    discounts: tuple[Discount, ...] = ()
    subtotal: Decimal
    taxes: Taxes
    gratuity: Decimal = Decimal("0.00")
    total: Decimal
    valid_until: datetime
    booking_reference: str
    config_version: str

    @property
    def surcharge_total(self) -> Decimal:
        return sum((s.amount for s in self.surcharges), Decimal("0.00"))

    @property
    def discount_total(self) -> Decimal:
        return sum((d.amount for d in self.discounts), Decimal("0.00"))


class PriceCalculationResult(_Frozen):
    breakdown: QuoteBreakdown
    warnings: tuple[str, ...] = ()
