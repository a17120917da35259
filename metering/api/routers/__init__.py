"""API routers."""

from metering.api.routers.billing import router as billing_router
from metering.api.routers.health import router as health_router

__all__ = ["billing_router", "health_router"]
