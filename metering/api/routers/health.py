"""Health check endpoint."""

from fastapi import APIRouter, Request

from metering import __version__
from metering.api.schemas import HealthCheck
from metering.config import get_settings
from metering.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthCheck,
    summary="Health check",
    description="Check the health of the service and its datastores.",
)
async def health_check(request: Request) -> HealthCheck:
    settings = get_settings()
    state = request.app.state

    database_status = "unhealthy"
    store = getattr(state, "store", None)
    if store is not None:
        try:
            if await store.health_check():
                database_status = "healthy"
        except Exception as e:
            logger.warning("database_health_check_failed", error=str(e))

    redis_status = "unhealthy"
    redis = getattr(state, "redis", None)
    if redis is not None:
        try:
            await redis.ping()
            redis_status = "healthy"
        except Exception as e:
            logger.warning("redis_health_check_failed", error=str(e))

    overall = "healthy"
    if "unhealthy" in (database_status, redis_status):
        overall = "degraded"

    return HealthCheck(
        status=overall,
        version=__version__,
        environment=settings.environment.value,
        database=database_status,
        redis=redis_status,
    )
