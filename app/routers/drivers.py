"""
Drivers router: POST /v1/drivers (create), PATCH /v1/drivers/{id}/status,
                POST /v1/drivers/bookings/{id}/assign|start|complete
"""
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import get_current_driver, require_admin
from app.models.driver import Driver
from app.redis_client import cache_delete, get_redis
from app.routers.bookings import booking_cache_key, booking_response
from app.schemas.schemas import AssignDriverRequest, BookingResponse, DriverCreateRequest, DriverResponse
from app.services import booking as booking_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=DriverResponse)
async def create_driver(
    payload: DriverCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Register a new driver. No auth required for onboarding."""
    driver = Driver(name=payload.name, phone=payload.phone, seats=payload.seats, status="offline")
    db.add(driver)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Phone number already registered")
    await db.refresh(driver)
    return DriverResponse.model_validate(driver)


@router.patch("/{driver_id}/status", status_code=status.HTTP_200_OK)
async def update_driver_status(
    driver_id: str,
    new_status: str,
    db: AsyncSession = Depends(get_db),
    current_driver: str = Depends(get_current_driver),
):
    """Toggle driver online/offline (available or offline)."""
    if current_driver != driver_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot change another driver's status")
    valid = {"offline", "available"}
    if new_status not in valid:
        raise HTTPException(status_code=400, detail=f"status must be one of {sorted(valid)}")
    result = await db.execute(select(Driver).where(Driver.id == driver_id))
    driver = result.scalar_one_or_none()
    if not driver:
        raise HTTPException(status_code=404, detail="Driver not found")
    if driver.status == "on_trip":
        raise HTTPException(status_code=409, detail="Driver is on a trip")
    driver.status = new_status
    await db.commit()
    return {"id": driver_id, "status": new_status}


@router.post("/bookings/{booking_id}/assign", response_model=BookingResponse)
async def assign_driver(
    booking_id: str,
    payload: AssignDriverRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    admin_id: str = Depends(require_admin),
):
    booking = await booking_service.assign_driver(db, booking_id, payload.driver_id)
    await cache_delete(redis, booking_cache_key(booking_id))
    return booking_response(booking)


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_trip(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    driver_id: str = Depends(get_current_driver),
):
    booking = await booking_service.start_trip(db, booking_id, driver_id)
    await cache_delete(redis, booking_cache_key(booking_id))
    return booking_response(booking)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_trip(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    driver_id: str = Depends(get_current_driver),
):
    booking = await booking_service.complete_trip(db, booking_id, driver_id)
    await cache_delete(redis, booking_cache_key(booking_id))
    return booking_response(booking)
