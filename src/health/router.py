"""Health check endpoints."""

from fastapi import APIRouter, Request, status
from fastapi.responses import ORJSONResponse

from src.config import get_settings
from src.core.database import AsyncCassandraConnection


router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict[str, str]:
    """Liveness probe - the process is up."""
    return {"status": "alive"}


@router.get("/ready")
async def readiness(request: Request) -> ORJSONResponse:
    """Readiness probe - storage is reachable and the service is wired."""
    settings = get_settings()
    state = request.app.state

    checks: dict[str, bool] = {
        "progress_service": getattr(state, "progress_service", None) is not None,
    }
    if settings.persistence_backend == "cassandra":
        checks["cassandra"] = AsyncCassandraConnection.is_connected()
    if settings.redis_enabled:
        checks["redis"] = getattr(state, "redis", None) is not None

    # Redis only fans events out; it never blocks readiness
    ready = all(ok for name, ok in checks.items() if name != "redis")

    return ORJSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "not_ready",
            "environment": settings.environment,
            "persistence_backend": settings.persistence_backend,
            "checks": checks,
        },
    )


@router.get("")
async def health() -> dict[str, str]:
    """General health check endpoint."""
    settings = get_settings()
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }
