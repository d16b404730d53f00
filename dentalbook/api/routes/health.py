"""
Health Check Endpoints

Liveness and readiness checks for load balancers and orchestration.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dentalbook.config import settings
from dentalbook.infra.redis import check_redis_health
from dentalbook.infra.store_client import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float] = None


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    """
    Basic health check.

    Always returns 200 if the application is running.
    Use /health/ready for dependency checks.
    """
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness check",
    description="Checks Redis and store connectivity. Returns 503 if any dependency is unavailable.",
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "One or more dependencies are unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness check.

    Checks:
    - Redis connectivity (wizard sessions, realtime feed)
    - Backing store reachability

    Returns 503 if any check fails.
    """
    checks = {}
    all_ok = True

    # Check Redis
    try:
        redis_ok = await check_redis_health()
        checks["redis"] = "ok" if redis_ok else "failed"
        if not redis_ok:
            all_ok = False
            logger.warning("Readiness check: Redis unhealthy")
    except Exception as e:
        checks["redis"] = "error"
        all_ok = False
        logger.error(f"Readiness check: Redis error - {e}")

    # Check store
    try:
        store_ok = await get_store().ping()
        checks["store"] = "ok" if store_ok else "failed"
        if not store_ok:
            all_ok = False
            logger.warning("Readiness check: Store unreachable")
    except Exception as e:
        checks["store"] = "error"
        all_ok = False
        logger.error(f"Readiness check: Store error - {e}")

    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response
