"""
FastAPI application with New Relic APM, CORS, lifespan, and all routers.
"""
import logging
import os

# New Relic must be initialized BEFORE any other imports that it instruments.
if os.getenv("NEW_RELIC_LICENSE_KEY"):
    import newrelic.agent
    newrelic.agent.initialize("newrelic.ini")

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import AsyncSessionLocal, close_db
from app.exceptions import BookingPlatformError
from app.redis_client import get_redis, close_redis
from app.routers import admin, bookings, drivers, payments, quotes
from app.services import pricing_config
from app.services.distance import build_distance_provider
from app.services.notifications import LoggingNotificationSender
from app.services.payment import build_payment_gateway
from app.services.pricing import PricingEngine
from app.services.scheduler import build_scheduler

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s [%s]", settings.app_name, settings.env)
    await get_redis()          # warm up connection pool

    # A pricing config overlap or gap is fatal at startup
    async with AsyncSessionLocal() as db:
        app.state.pricing_engine.swap_config(await pricing_config.load_active(db))
    logger.info("Pricing config %s active", app.state.pricing_engine.config.version)

    scheduler = None
    if settings.background_tasks_enabled:
        scheduler = build_scheduler(
            app.state.pricing_engine, app.state.payment_gateway, app.state.notification_sender
        )
        scheduler.start()
    yield
    if scheduler is not None:
        await scheduler.stop()
    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Ground transportation booking: quotes, bookings, payments and cancellations",
    lifespan=lifespan,
)

app.state.pricing_engine = PricingEngine()
app.state.distance_provider = build_distance_provider()
app.state.payment_gateway = build_payment_gateway()
app.state.notification_sender = LoggingNotificationSender()

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingPlatformError)
async def platform_exception_handler(request: Request, exc: BookingPlatformError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Health check (no auth)
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "pricing_version": app.state.pricing_engine.config.version}


# Register routers
app.include_router(quotes.router)
app.include_router(bookings.router)
app.include_router(payments.router)
app.include_router(drivers.router)
app.include_router(admin.router)
