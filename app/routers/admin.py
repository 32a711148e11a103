"""
Admin router: pricing config versions and the cancellation policy.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_pricing_engine
from app.middleware.auth import require_admin
from app.models.pricing_config import PricingConfigVersion
from app.schemas.pricing import PricingConfig
from app.schemas.schemas import (
    CancellationPolicyResponse,
    PricingConfigPublishRequest,
    PricingConfigVersionResponse,
)
from app.services import pricing_config
from app.services.cancellation import policy_summary
from app.services.pricing import PricingEngine

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["Admin"])


def version_response(row: PricingConfigVersion) -> PricingConfigVersionResponse:
    return PricingConfigVersionResponse(
        id=row.id,
        version=row.version,
        effective_from=row.effective_from,
        effective_to=row.effective_to,
        created_by=row.created_by,
        config=pricing_config.to_config(row),
    )


@router.get("/pricing/active", response_model=PricingConfig)
async def active_pricing(
    engine: PricingEngine = Depends(get_pricing_engine),
    admin_id: str = Depends(require_admin),
):
    """The snapshot quotes are currently priced with."""
    return engine.config


@router.get("/pricing/versions", response_model=list[PricingConfigVersionResponse])
async def list_pricing_versions(
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [version_response(row) for row in await pricing_config.list_versions(db)]


@router.post("/pricing/versions", status_code=status.HTTP_201_CREATED, response_model=PricingConfigVersionResponse)
async def publish_pricing_version(
    payload: PricingConfigPublishRequest,
    db: AsyncSession = Depends(get_db),
    engine: PricingEngine = Depends(get_pricing_engine),
    admin_id: str = Depends(require_admin),
):
    """Publish a new rate table. Takes effect immediately unless scheduled."""
    row = await pricing_config.publish(db, payload.config, payload.effective_from, created_by=admin_id)
    await pricing_config.refresh_engine(db, engine)
    return version_response(row)


@router.get("/cancellation-policy", response_model=CancellationPolicyResponse)
async def cancellation_policy(admin_id: str = Depends(require_admin)):
    return CancellationPolicyResponse(**policy_summary())
