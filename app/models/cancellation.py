import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base, UTCDateTime, utcnow


class Cancellation(Base):
    __tablename__ = "cancellations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), unique=True, nullable=False)
    cancelled_by: Mapped[str] = mapped_column(String, nullable=False)
    cancellation_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # customer | driver | system
    cancellation_type: Mapped[str] = mapped_column(String(20), nullable=False, default="customer")

    refund_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    cancellation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # pending | processing | completed | failed | not_applicable
    refund_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    refund_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trip_protection_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    refund_processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
