import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base, UTCDateTime, utcnow


class BookingModification(Base):
    __tablename__ = "booking_modifications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    modified_by: Mapped[str] = mapped_column(String, nullable=False)
    # comma separated kinds, e.g. "datetime,location"
    modification_type: Mapped[str] = mapped_column(String(100), nullable=False)

    original_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    new_data: Mapped[dict] = mapped_column(JSON, nullable=False)

    original_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    new_fare_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    new_enhancement_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_difference: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    modification_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # pending | completed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
