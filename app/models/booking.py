import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base, UTCDateTime, utcnow


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # One booking per quote
    quote_id: Mapped[str | None] = mapped_column(String, ForeignKey("quotes.id"), unique=True, nullable=True)
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("drivers.id"), nullable=True, index=True)

    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # PENDING | CONFIRMED | IN_PROGRESS | COMPLETED | CANCELLED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)

    # BookingRequest snapshot used for re-pricing on modification
    trip: Mapped[dict] = mapped_column(JSON, nullable=False)
    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False)
    dropoff_address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    return_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_hours: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    passenger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    contact_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    fare_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    gratuity_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    enhancement_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    enhancements: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    trip_protection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    modification_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_modified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    confirmation: Mapped["BookingConfirmation | None"] = relationship(
        back_populates="booking", uselist=False, lazy="selectin"
    )


class BookingConfirmation(Base):
    __tablename__ = "booking_confirmations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), unique=True, nullable=False)
    booking_reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    confirmation_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    modification_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    booking: Mapped[Booking] = relationship(back_populates="confirmation")
