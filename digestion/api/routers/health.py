"""Health check endpoints."""

import logging
import time
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from digestion.api.dependencies import RedisDep
from digestion.config import config
from digestion.db.redis import RedisHealthCheck

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""

    status: str = Field(..., description="Overall health status")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: str = Field(..., description="API version")
    environment: str = Field(..., description="Current environment")
    services: dict[str, Any] = Field(default_factory=dict)


@router.get(
    "/health",
    response_model=HealthStatus,
    status_code=status.HTTP_200_OK,
    summary="Health Check",
    description="Check that the API process is up",
)
async def health_check() -> HealthStatus:
    """Basic health check endpoint."""
    return HealthStatus(
        status="healthy",
        version=config.app_version,
        environment=config.environment,
        services={"api": {"status": "healthy"}},
    )


@router.get(
    "/health/ready",
    response_model=HealthStatus,
    summary="Readiness Check",
    description="Check that the broker is reachable",
)
async def readiness_check(redis: RedisDep) -> HealthStatus | JSONResponse:
    """Readiness probe: the API can only queue work while Redis answers."""
    start = time.perf_counter()
    redis_ok = await RedisHealthCheck.check_connection(redis)
    latency_ms = round((time.perf_counter() - start) * 1000, 2)

    health = HealthStatus(
        status="healthy" if redis_ok else "unhealthy",
        version=config.app_version,
        environment=config.environment,
        services={
            "redis": {
                "status": "healthy" if redis_ok else "unhealthy",
                "latency_ms": latency_ms,
            }
        },
    )

    if not redis_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=health.model_dump(mode="json"),
        )
    return health
