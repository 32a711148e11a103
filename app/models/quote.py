import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base, UTCDateTime, utcnow


class Quote(Base):
    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # NULL for anonymous quotes
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # BookingRequest / DistanceInfo / QuoteBreakdown as JSON snapshots
    request: Mapped[dict] = mapped_column(JSON, nullable=False)
    distance: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    breakdown: Mapped[dict] = mapped_column(JSON, nullable=False)
    warnings: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    booking_reference: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, index=True)
