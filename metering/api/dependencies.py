"""FastAPI dependencies: admin authentication and app-scoped services."""

import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from metering.config import Settings, get_settings
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.store.base import BillingStore
from metering.utils.logging import get_logger

logger = get_logger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_admin(
    api_key: str | None = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject requests without the configured admin API key."""
    if settings.admin_api_key is None:
        # No key configured: the admin surface is closed
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )

    expected = settings.admin_api_key.get_secret_value()
    if not api_key or not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("admin_auth_failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not available",
        )
    return service


async def get_store(request: Request) -> BillingStore:
    return _service(request, "store")


async def get_orchestrator(request: Request) -> ReconciliationOrchestrator:
    return _service(request, "orchestrator")
