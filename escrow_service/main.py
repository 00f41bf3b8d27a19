import asyncio
import logging

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .bookings import BookingRecordManager
from .breaker import CircuitBreaker
from .config import Settings, load_settings
from .db import get_engine, get_session
from .errors import (
    BookingCreationError,
    EscrowError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentInitializationError,
    ValidationError,
)
from .gateway import PaystackGateway
from .middleware import RequestLoggingMiddleware
from .orchestrator import BookingOrchestrator
from .payments import EscrowPaymentManager
from .publisher import RabbitPublisher
from .refund_worker import AutoRefundScheduler
from .routes import router

logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Service health."},
    {"name": "Bookings", "description": "Booking creation and provider/customer lifecycle."},
    {"name": "Payments", "description": "Escrow payment callbacks, release and refund."},
]

_ERROR_STATUS = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (InvalidStateError, 409),
    (PaymentInitializationError, 502),
    (GatewayError, 502),
    (BookingCreationError, 500),
]


async def escrow_error_handler(request: Request, exc: EscrowError):
    status_code = 500
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            status_code = code
            break

    body = {"detail": str(exc), "error": type(exc).__name__}
    booking_id = getattr(exc, "booking_id", None)
    if booking_id:
        body["booking_id"] = booking_id
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    gateway=None,
    publisher=None,
    clock=None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = get_engine(settings.database_url)
    session_factory = get_session(engine)

    publisher = publisher or RabbitPublisher(settings.rabbit_url)

    redis_client = None
    breaker = None
    if gateway is None:
        if settings.redis_url:
            redis_client = redis.from_url(settings.redis_url, decode_responses=True)
            breaker = CircuitBreaker(
                "payment-gateway",
                redis_client,
                failure_threshold=settings.breaker_failure_threshold,
                reset_timeout_seconds=settings.breaker_reset_seconds,
            )
        gateway = PaystackGateway(settings, breaker=breaker)

    clock_kwargs = {"clock": clock} if clock else {}
    bookings = BookingRecordManager(session_factory, settings, publisher, **clock_kwargs)
    payments = EscrowPaymentManager(session_factory, bookings, gateway, publisher, settings, **clock_kwargs)
    orchestrator = BookingOrchestrator(bookings, payments)
    scheduler = AutoRefundScheduler(
        session_factory,
        payments,
        tick_seconds=settings.refund_tick_seconds,
        batch_size=settings.refund_batch_size,
    )

    app = FastAPI(title="Escrow Service", openapi_tags=OPENAPI_TAGS)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(EscrowError, escrow_error_handler)
    app.include_router(router)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.publisher = publisher
    app.state.bookings = bookings
    app.state.payments = payments
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    stop_event = asyncio.Event()
    tasks = {}

    @app.get("/health", tags=["System"])
    async def health():
        body = {"status": "ok", "service": "escrow-service", "events_enabled": publisher.enabled}
        if breaker is not None:
            try:
                body["gateway_breaker"] = await breaker.status()
            except Exception as e:
                logger.warning("breaker status unavailable: %s", e)
                body["gateway_breaker"] = None
        return body

    @app.on_event("startup")
    async def startup():
        try:
            await publisher.connect()
        except Exception as e:
            logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

        tasks["refund"] = asyncio.create_task(scheduler.loop(stop_event))

    @app.on_event("shutdown")
    async def shutdown():
        stop_event.set()
        task = tasks.pop("refund", None)
        if task:
            await task
        await publisher.close()
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()

    return app
