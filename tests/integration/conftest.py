"""
Shared fixtures for integration tests: a throwaway SQLite database, an
in-memory Redis stand-in and the app wired to sandbox collaborators.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base, get_db
from app.main import app
from app.middleware.auth import create_access_token
from app.redis_client import get_redis
from app.schemas.pricing import (
    BookingRequest, CalendarRules, DistanceInfo, LocationInfo, PricingConfig, ServiceType,
)
from app.services.distance import DistanceProvider
from app.services.notifications import NotificationSender
from app.services.payment import SandboxPaymentGateway
from app.services.pricing import PricingEngine

TEST_CONFIG = PricingConfig(version="test-utc", calendar=CalendarRules(timezone="UTC"))

PICKUP = LocationInfo(address="100 Main St", lat=34.05, lng=-118.25)
DROPOFF = LocationInfo(address="200 Ocean Ave", lat=34.01, lng=-118.49)


class FakeRedis:
    """The handful of Redis commands the API uses, backed by a dict."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    async def aclose(self):
        pass


class FixedDistanceProvider(DistanceProvider):
    def __init__(self, miles: float = 20):
        self.miles = miles
        self.calls = 0

    async def get_distance(self, origin, destination):
        self.calls += 1
        return DistanceInfo(distance_meters=int(round(self.miles * 1609.34)), duration_seconds=1800)


class RecordingSender(NotificationSender):
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, job):
        if self.fail:
            raise RuntimeError("SMTP unavailable")
        self.sent.append((job.kind, job.booking_id))


def auth_headers(user_id: str, role: str | None = None) -> dict:
    claims = {"sub": user_id}
    if role:
        claims["role"] = role
    return {"Authorization": f"Bearer {create_access_token(claims)}", "Content-Type": "application/json"}


def trip_request(pickup_at: datetime, **kwargs) -> BookingRequest:
    return BookingRequest(
        service_type=kwargs.pop("service_type", ServiceType.ONE_WAY),
        pickup_location=PICKUP,
        dropoff_location=kwargs.pop("dropoff_location", DROPOFF),
        pickup_datetime=pickup_at,
        **kwargs,
    )


def future(days: int = 5, hour: int = 12) -> datetime:
    """A pickup time clear of the late-night window, ``days`` from today."""
    day = datetime.now(timezone.utc) + timedelta(days=days)
    return day.replace(hour=hour, minute=0, second=0, microsecond=0)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def pricing_engine():
    return PricingEngine(TEST_CONFIG)


@pytest.fixture
def distance_provider():
    return FixedDistanceProvider()


@pytest.fixture
def gateway():
    return SandboxPaymentGateway()


@pytest.fixture
def redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def client(session_factory, redis, gateway, pricing_engine, distance_provider):
    async def override_db():
        async with session_factory() as session:
            yield session

    async def override_redis():
        return redis

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_redis] = override_redis
    previous = (app.state.pricing_engine, app.state.distance_provider, app.state.payment_gateway)
    app.state.pricing_engine = pricing_engine
    app.state.distance_provider = distance_provider
    app.state.payment_gateway = gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
    app.state.pricing_engine, app.state.distance_provider, app.state.payment_gateway = previous
