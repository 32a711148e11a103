import uuid
from datetime import datetime
from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base, UTCDateTime, utcnow


class PricingConfigVersion(Base):
    """
    One published rate table. Active for ``effective_from <= t < effective_to``
    (open-ended when ``effective_to`` is NULL). Rows are never edited in place
    except to close ``effective_to`` when a successor is published.
    """
    __tablename__ = "pricing_configs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    version: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    effective_to: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
