"""
Dental Booking API

FastAPI application entry point that ties all components together.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dentalbook.api.deps import get_dispatcher, get_subscription_registry
from dentalbook.api.errors import error_status
from dentalbook.api.routes import appointments, health, realtime, wizard
from dentalbook.config import settings
from dentalbook.core.errors import BookingError
from dentalbook.infra.notifications import get_email_client
from dentalbook.infra.redis import RedisClient
from dentalbook.infra.store_client import get_store


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Test Redis connection
    try:
        redis = await RedisClient.get_client()
        if redis:
            logger.info("Redis connection established")
        else:
            logger.warning("Redis unavailable - running in degraded mode")
    except Exception as e:
        logger.warning(f"Redis connection failed: {e}")

    dispatcher = get_dispatcher()
    await dispatcher.start()

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    await get_subscription_registry().close_all()

    # Deliver queued notifications before the store goes away
    await dispatcher.stop(drain=True)
    if dispatcher.failure_count:
        logger.warning(f"{dispatcher.failure_count} side effects failed during this run")

    await get_store().close()
    await get_email_client().close()

    await RedisClient.close()
    logger.info("Redis connection closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Dental Booking API",
    description="""
    Appointment lifecycle and scheduling engine for dental clinics.

    ## Features
    - Step-by-step booking wizard with live availability
    - Atomic booking with double-booking protection
    - Staff lifecycle actions (approve, reject, complete, no-show)
    - Patient cancellation within the clinic's policy window
    - Realtime appointment and notification updates

    ## Identity
    Every request carries `X-Actor-ID`, `X-Actor-Role` and, for staff,
    `X-Clinic-ID`.
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BookingError)
async def booking_exception_handler(
    request: Request,
    exc: BookingError,
) -> JSONResponse:
    """Map the booking error taxonomy onto HTTP status codes."""
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} refused: {exc.code}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation",
            "code": "invalid_request",
            "detail": exc.errors(),
            "retryable": False,
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": detail,
        },
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Log request duration in debug mode."""
    start_time = time.time()

    try:
        return await call_next(request)
    finally:
        if settings.debug:
            duration = time.time() - start_time
            logger.debug(
                f"{request.method} {request.url.path} "
                f"completed in {duration:.3f}s"
            )


app.include_router(health.router)
app.include_router(wizard.router)
app.include_router(appointments.router)
app.include_router(realtime.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dentalbook.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
