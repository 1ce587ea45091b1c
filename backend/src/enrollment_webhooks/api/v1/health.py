"""Health check endpoints for Kubernetes liveness and readiness probes."""
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from enrollment_webhooks.api.deps import get_runtime
from enrollment_webhooks.runtime import WebhookRuntime

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    """
    Liveness probe for Kubernetes.

    Does not check external dependencies.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready", tags=["Health"])
async def readiness_check(runtime: WebhookRuntime = Depends(get_runtime)) -> JSONResponse:
    """
    Readiness probe for Kubernetes.

    Returns 200 only when the database and Redis are both reachable.
    """
    checks = {"database": "unknown", "redis": "unknown"}
    ready = True

    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except (SQLAlchemyError, OSError) as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    try:
        await runtime.redis.ping()
        checks["redis"] = "connected"
    except (RedisError, OSError) as exc:
        logger.error("redis_health_check_failed", error=str(exc))
        checks["redis"] = "disconnected"
        ready = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "ready": ready,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
