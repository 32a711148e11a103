"""
Versioned pricing configuration store.

Each row in ``pricing_configs`` is one immutable rate table valid for
``[effective_from, effective_to)``. Exactly one row must cover any instant;
an overlap or a gap is a configuration error raised at load time.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.exceptions import ConflictError, PricingConfigError
from app.models.pricing_config import PricingConfigVersion
from app.schemas.pricing import DEFAULT_PRICING_CONFIG, PricingConfig
from app.services.pricing import PricingEngine

logger = logging.getLogger(__name__)


def to_config(row: PricingConfigVersion) -> PricingConfig:
    try:
        config = PricingConfig.model_validate(row.config)
    except ValueError as e:
        raise PricingConfigError(f"Pricing config {row.version} is malformed: {e}") from e
    return config.model_copy(update={
        "version": row.version,
        "effective_from": row.effective_from,
        "effective_to": row.effective_to,
    })


async def load_active(db: AsyncSession, at: Optional[datetime] = None) -> PricingConfig:
    """
    Return the single config active at ``at``. Falls back to the built-in
    table only when nothing has ever been published.
    """
    at = at or utcnow()
    result = await db.execute(
        select(PricingConfigVersion).where(
            PricingConfigVersion.effective_from <= at,
            or_(PricingConfigVersion.effective_to.is_(None), PricingConfigVersion.effective_to > at),
        )
    )
    rows = result.scalars().all()

    if len(rows) > 1:
        versions = sorted(r.version for r in rows)
        raise PricingConfigError(
            f"{len(rows)} pricing configs are active at {at.isoformat()}",
            details={"versions": versions},
        )
    if rows:
        return to_config(rows[0])

    published = await db.scalar(select(func.count()).select_from(PricingConfigVersion))
    if published:
        raise PricingConfigError(f"No pricing config is active at {at.isoformat()}")
    return DEFAULT_PRICING_CONFIG


async def list_versions(db: AsyncSession) -> list[PricingConfigVersion]:
    result = await db.execute(
        select(PricingConfigVersion).order_by(PricingConfigVersion.effective_from.desc())
    )
    return list(result.scalars().all())


async def publish(
    db: AsyncSession,
    config: PricingConfig,
    effective_from: Optional[datetime] = None,
    created_by: Optional[str] = None,
) -> PricingConfigVersion:
    """
    Add a new version taking effect at ``effective_from`` (default now). The
    currently open version is closed at that instant; a version that already
    starts at or after it makes the publish a conflict.
    """
    effective_from = effective_from or utcnow()
    version = config.version
    if version == DEFAULT_PRICING_CONFIG.version:
        version = f"v{effective_from:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6]}"

    existing = await db.scalar(select(PricingConfigVersion).where(PricingConfigVersion.version == version))
    if existing is not None:
        raise ConflictError(f"Pricing config version {version} already exists")

    later = await db.scalar(
        select(PricingConfigVersion).where(PricingConfigVersion.effective_from >= effective_from).limit(1)
    )
    if later is not None:
        raise ConflictError(
            f"Version {later.version} already takes effect at {later.effective_from.isoformat()}",
            details={"version": later.version},
        )

    open_rows = await db.execute(
        select(PricingConfigVersion)
        .where(PricingConfigVersion.effective_to.is_(None))
        .with_for_update()
    )
    for row in open_rows.scalars().all():
        row.effective_to = effective_from

    row = PricingConfigVersion(
        version=version,
        config=config.model_dump(mode="json", exclude={"version", "effective_from", "effective_to"}),
        effective_from=effective_from,
        created_by=created_by,
    )
    db.add(row)
    await db.commit()
    logger.info("Published pricing config %s effective %s", version, effective_from.isoformat())
    return row


async def refresh_engine(db: AsyncSession, engine: PricingEngine, at: Optional[datetime] = None) -> bool:
    """Swap the engine's snapshot if a different version is now active."""
    current = engine.config
    active = await load_active(db, at)
    if active.version == current.version:
        return False
    return engine.swap_config(active, expected_version=current.version)
