"""
Event Ticketing Reservations API - Main Application Entry Point

The booking-and-payment core of an event ticketing platform:
- Concurrency-safe ticket reservation with optimistic locking
- Payment through a pluggable gateway (Paymob, or offline)
- HMAC-verified, idempotent webhook reconciliation
- Scheduled expiry of abandoned bookings and payment housekeeping
- Structured logging with request correlation and Prometheus metrics
"""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from app.api.middleware import RequestLoggingMiddleware
from app.api.router import api_router
from app.core.config import get_settings
from app.core.exceptions import ReservationError
from app.core.logging import get_logger, setup_logging
from app.core.metrics import metrics_endpoint
from app.db.session import build_engine, build_session_factory
from app.infrastructure.redis_client import RedisClient
from app.services.cache_service import get_cache_stats
from app.services.gateway_factory import build_payment_gateway
from app.services.jobs import build_scheduler
from app.services.notifications import LogNotifier

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: build every shared resource, tear it down in reverse."""
    setup_logging(settings)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        gateway=settings.PAYMENT_GATEWAY,
    )

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)

    cache = RedisClient.from_settings(settings)
    await cache.connect()
    if not cache.available:
        logger.warning("redis_unavailable", message="Running without cache")

    http_client = httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    gateway = build_payment_gateway(settings, http_client)
    notifier = LogNotifier()

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.cache = cache
    app.state.payment_gateway = gateway
    app.state.notifier = notifier

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler(settings, session_factory, gateway, cache=cache, notifier=notifier)
        scheduler.start()

    yield

    # Cleanup
    if scheduler is not None:
        await scheduler.stop()
    await http_client.aclose()
    await cache.close()
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Ticket reservation, payment and webhook reconciliation API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(api_router)


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    content = {"detail": exc.message, "code": exc.code}
    if "booking_code" in exc.context:
        content["booking_code"] = exc.context["booking_code"]

    log = logger.error if exc.status_code >= 500 else logger.info
    log("request_rejected", code=exc.code, status_code=exc.status_code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("booking_conflict_on_commit", error=str(exc))
    return JSONResponse(
        status_code=409,
        content={"detail": "Booking was modified concurrently. Please try again.", "code": "booking_conflict"},
    )


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats(getattr(request.app.state, "cache", None))
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "gateway": settings.PAYMENT_GATEWAY,
        "cache": cache_stats,
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
async def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
