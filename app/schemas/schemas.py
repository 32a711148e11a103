from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator

from app.schemas.pricing import (
    BookingRequest, Discount, DistanceInfo, LocationInfo, PricingConfig,
    ServiceType, Surcharge, Taxes,
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BookingStatusEnum(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatusEnum(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class RefundStatusEnum(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    not_applicable = "not_applicable"


class CancellationTypeEnum(str, Enum):
    customer = "customer"
    driver = "driver"
    system = "system"


class ModificationStatusEnum(str, Enum):
    pending = "pending"
    completed = "completed"


class DriverStatusEnum(str, Enum):
    offline = "offline"
    available = "available"
    on_trip = "on_trip"


# ---------------------------------------------------------------------------
# Enhancements
# ---------------------------------------------------------------------------

class ChildSeats(BaseModel):
    infant: int = Field(default=0, ge=0, le=4)
    toddler: int = Field(default=0, ge=0, le=4)
    booster: int = Field(default=0, ge=0, le=4)


class EnhancementSelection(BaseModel):
    trip_protection: bool = False
    meet_and_greet: bool = False
    extra_bags: int = Field(default=0, ge=0, le=20)
    special_handling: list[str] = Field(default_factory=list)
    child_seats: ChildSeats = Field(default_factory=ChildSeats)
    additional_stops: int = Field(default=0, ge=0, le=10)


# ---------------------------------------------------------------------------
# Quote schemas
# ---------------------------------------------------------------------------

class QuoteResponse(BaseModel):
    id: str
    service_type: ServiceType
    base_rate: Decimal
    distance_charge: Decimal
    time_charges: Decimal
    surcharges: list[Surcharge]
    discounts: list[Discount]
    subtotal: Decimal
    taxes: Taxes
    gratuity: Decimal
    total: Decimal
    valid_until: datetime
    booking_reference: str
    locked_at: Optional[datetime] = None
    distance: Optional[DistanceInfo] = None
    warnings: list[str] = Field(default_factory=list)


class RequoteRequest(BaseModel):
    pickup_location: Optional[LocationInfo] = None
    dropoff_location: Optional[LocationInfo] = None
    pickup_datetime: Optional[datetime] = None
    return_datetime: Optional[datetime] = None
    duration_hours: Optional[Decimal] = Field(default=None, gt=0, le=24)
    service_type: Optional[ServiceType] = None
    corporate_account: Optional[bool] = None


# ---------------------------------------------------------------------------
# Booking schemas
# ---------------------------------------------------------------------------

class BookingCreateRequest(BaseModel):
    quote_id: Optional[str] = None
    trip: Optional[BookingRequest] = None
    contact_phone: str = Field(..., min_length=7, max_length=20)
    passenger_count: int = Field(default=1, ge=1)
    gratuity_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    gratuity_amount: Optional[Decimal] = Field(default=None, ge=0)
    enhancements: Optional[EnhancementSelection] = None

    @model_validator(mode="after")
    def _quote_or_trip(self):
        if (self.quote_id is None) == (self.trip is None):
            raise ValueError("Provide exactly one of quote_id or trip")
        if self.gratuity_percentage is not None and self.gratuity_amount is not None:
            raise ValueError("Provide gratuity as a percentage or an amount, not both")
        return self


class BookingResponse(BaseModel):
    id: str
    user_id: str
    status: BookingStatusEnum
    service_type: ServiceType
    pickup_address: str
    dropoff_address: Optional[str] = None
    scheduled_at: datetime
    return_at: Optional[datetime] = None
    duration_hours: Optional[Decimal] = None
    passenger_count: int
    fare_amount: Decimal
    gratuity_amount: Decimal
    enhancement_cost: Decimal
    total_amount: Decimal
    trip_protection: bool
    modification_count: int
    is_modified: bool
    quote_id: Optional[str] = None
    driver_id: Optional[str] = None
    booking_reference: Optional[str] = None
    confirmation_number: Optional[str] = None
    created_at: datetime


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int


# ---------------------------------------------------------------------------
# Modification schemas: one concrete type per kind of change
# ---------------------------------------------------------------------------

class DateTimeChange(BaseModel):
    kind: Literal["datetime"] = "datetime"
    new_pickup_datetime: datetime
    new_return_datetime: Optional[datetime] = None


class LocationChange(BaseModel):
    kind: Literal["location"] = "location"
    new_pickup_location: Optional[LocationInfo] = None
    new_dropoff_location: Optional[LocationInfo] = None

    @model_validator(mode="after")
    def _at_least_one(self):
        if self.new_pickup_location is None and self.new_dropoff_location is None:
            raise ValueError("A location change needs a new pickup or dropoff location")
        return self


class ServiceTypeChange(BaseModel):
    kind: Literal["service_type"] = "service_type"
    to: ServiceType
    duration_hours: Optional[Decimal] = Field(default=None, gt=0, le=24)
    return_datetime: Optional[datetime] = None


class EnhancementChange(BaseModel):
    kind: Literal["enhancements"] = "enhancements"
    enhancements: EnhancementSelection


class PassengerCountChange(BaseModel):
    kind: Literal["passenger_count"] = "passenger_count"
    passenger_count: int = Field(..., ge=1)


BookingChange = Annotated[
    Union[DateTimeChange, LocationChange, ServiceTypeChange, EnhancementChange, PassengerCountChange],
    Field(discriminator="kind"),
]


class ModificationRequest(BaseModel):
    changes: list[BookingChange] = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("changes")
    @classmethod
    def _one_change_per_kind(cls, changes):
        kinds = [c.kind for c in changes]
        if len(kinds) != len(set(kinds)):
            raise ValueError("Each kind of change may appear only once")
        return changes


class ModificationOut(BaseModel):
    id: str
    booking_id: str
    modification_type: str
    status: ModificationStatusEnum
    price_difference: Decimal
    modification_fee: Decimal
    original_data: dict[str, Any]
    new_data: dict[str, Any]
    reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ModificationResponse(BaseModel):
    modification: ModificationOut
    price_difference: Decimal
    modification_fee: Decimal
    requires_payment: bool
    new_total: Decimal


# ---------------------------------------------------------------------------
# Cancellation schemas
# ---------------------------------------------------------------------------

class CancellationRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=100)
    cancellation_type: CancellationTypeEnum = CancellationTypeEnum.customer


class CancellationResponse(BaseModel):
    id: str
    booking_id: str
    cancellation_reason: Optional[str] = None
    cancellation_type: CancellationTypeEnum
    refund_percentage: int
    cancellation_fee: Decimal
    refund_amount: Decimal
    refund_status: RefundStatusEnum
    refund_ref: Optional[str] = None
    trip_protection_applied: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class CancellationPolicyResponse(BaseModel):
    full_refund_hours: int
    partial_refund_hours: int
    partial_refund_percentage: int
    standard_fee: Decimal
    last_minute_fee: Decimal
    trip_protection_fee: Decimal
    emergency_reasons: list[str]


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class PaymentIntentRequest(BaseModel):
    booking_id: str


class PaymentConfirmRequest(BaseModel):
    payment_method_id: Optional[str] = None


class PaymentResponse(BaseModel):
    payment_id: str
    booking_id: str
    status: PaymentStatusEnum
    amount: Decimal
    currency: str
    charge_ref: Optional[str] = None
    client_secret: Optional[str] = None
    failure_reason: Optional[str] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., min_length=10, max_length=20)
    seats: int = Field(default=4, ge=1, le=14)


class DriverResponse(BaseModel):
    id: str
    name: str
    phone: str
    seats: int
    status: DriverStatusEnum
    current_booking_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AssignDriverRequest(BaseModel):
    driver_id: str


# ---------------------------------------------------------------------------
# Admin pricing schemas
# ---------------------------------------------------------------------------

class PricingConfigPublishRequest(BaseModel):
    config: PricingConfig
    effective_from: Optional[datetime] = None


class PricingConfigVersionResponse(BaseModel):
    id: str
    version: str
    effective_from: datetime
    effective_to: Optional[datetime] = None
    created_by: Optional[str] = None
    config: PricingConfig
