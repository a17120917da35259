"""Main FastAPI application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.asyncio import Redis

from metering import __version__
from metering.api.routers import billing_router, health_router
from metering.config import get_settings
from metering.meter.stripe_meter import create_metering_service
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.store.sql import SqlBillingStore
from metering.utils.locking import RunLock
from metering.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the ledger, metering client and run lock for the app's lifetime."""
    settings = get_settings()
    configure_logging(settings)

    app.state.redis = Redis.from_url(str(settings.redis_url), decode_responses=True)
    app.state.store = SqlBillingStore.from_settings(settings)
    app.state.metering = create_metering_service(settings)
    app.state.orchestrator = ReconciliationOrchestrator.from_settings(
        settings,
        app.state.store,
        app.state.metering,
        run_lock=RunLock(app.state.redis, ttl_seconds=settings.run_lock_ttl_seconds),
    )

    if settings.sentry_dsn:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment.value,
            traces_sample_rate=0.1,
        )
        logger.info("sentry_initialized")

    logger.info("application_started", environment=settings.environment.value)

    yield

    logger.info("application_stopping")
    await app.state.metering.close()
    await app.state.store.close()
    await app.state.redis.aclose()
    logger.info("application_stopped")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Tests pass ``use_lifespan=False`` and place fakes on ``app.state``.
    """
    settings = get_settings()

    app = FastAPI(
        title="Dealer Metering API",
        description="""
## Usage reconciliation

Keeps the local billing ledger consistent with Stripe Billing Meters.

### Authentication

Billing endpoints require the admin key in the `X-API-Key` header.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    if settings.prometheus_enabled:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    app.include_router(health_router)
    app.include_router(billing_router, prefix="/api/v1")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.debug:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "internal_server_error",
                    "message": str(exc),
                    "type": type(exc).__name__,
                },
            )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app
