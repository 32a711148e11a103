"""
Distance / duration lookup between two locations.

Google Distance Matrix when an API key is configured, otherwise a
straight-line estimate. Any failure raises UpstreamError so quoting fails
closed.
"""
import logging
from abc import ABC, abstractmethod
from math import atan2, cos, radians, sin, sqrt
from typing import Optional

import httpx

from app.config import Settings, get_settings
from app.exceptions import UpstreamError
from app.schemas.pricing import DistanceInfo, LocationInfo

logger = logging.getLogger(__name__)
settings = get_settings()

METERS_PER_MILE = 1609.34


def _haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Approximate straight-line distance in km."""
    R = 6371
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return 2 * R * atan2(sqrt(a), sqrt(1 - a))


def _duration_text(seconds: int) -> str:
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours:
        return f"{hours} hour{'s' if hours != 1 else ''} {minutes} min"
    return f"{minutes} min"


class DistanceProvider(ABC):
    @abstractmethod
    async def get_distance(self, origin: LocationInfo, destination: LocationInfo) -> DistanceInfo:
        ...


class HaversineDistanceProvider(DistanceProvider):
    """Great-circle distance with a flat average speed. Used when no maps key is set."""

    def __init__(self, average_speed_mph: float = 35.0) -> None:
        self.average_speed_mph = average_speed_mph

    async def get_distance(self, origin: LocationInfo, destination: LocationInfo) -> DistanceInfo:
        meters = int(round(_haversine_km(origin.lat, origin.lng, destination.lat, destination.lng) * 1000))
        miles = meters / METERS_PER_MILE
        seconds = int(round(miles / self.average_speed_mph * 3600))
        return DistanceInfo(
            distance_meters=meters,
            duration_seconds=seconds,
            distance_text=f"{miles:.1f} mi",
            duration_text=_duration_text(seconds),
        )


class GoogleDistanceMatrixProvider(DistanceProvider):
    def __init__(self, api_key: str, base_url: str, timeout: float = 5.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @staticmethod
    def _point(location: LocationInfo) -> str:
        if location.place_id:
            return f"place_id:{location.place_id}"
        return f"{location.lat},{location.lng}"

    async def get_distance(self, origin: LocationInfo, destination: LocationInfo) -> DistanceInfo:
        params = {
            "origins": self._point(origin),
            "destinations": self._point(destination),
            "units": "imperial",
            "key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/distancematrix/json", params=params)
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as e:
            logger.error("Distance lookup failed: %s -> %s: %s", origin.address, destination.address, e)
            raise UpstreamError("Distance lookup failed", code="DISTANCE_LOOKUP_FAILED") from e

        if body.get("status") != "OK":
            logger.error("Distance Matrix returned status=%s", body.get("status"))
            raise UpstreamError("Distance lookup failed", code="DISTANCE_LOOKUP_FAILED",
                                details={"status": body.get("status")})
        try:
            element = body["rows"][0]["elements"][0]
        except (KeyError, IndexError) as e:
            raise UpstreamError("Malformed distance response", code="DISTANCE_LOOKUP_FAILED") from e
        if element.get("status") != "OK":
            raise UpstreamError("No route between locations", code="DISTANCE_LOOKUP_FAILED",
                                details={"status": element.get("status")})

        return DistanceInfo(
            distance_meters=element["distance"]["value"],
            duration_seconds=element["duration"]["value"],
            distance_text=element["distance"].get("text", ""),
            duration_text=element["duration"].get("text", ""),
        )


def build_distance_provider(cfg: Optional[Settings] = None) -> DistanceProvider:
    cfg = cfg or settings
    if cfg.maps_api_key:
        return GoogleDistanceMatrixProvider(cfg.maps_api_key, cfg.maps_base_url, cfg.maps_timeout_seconds)
    logger.info("No maps API key configured; using straight-line distance estimates")
    return HaversineDistanceProvider(cfg.fallback_average_speed_mph)
