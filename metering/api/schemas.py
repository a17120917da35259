"""Request and response models for the HTTP surface."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field

from metering.models import EDITED_IMAGE


class ReconcileRequest(BaseModel):
    """Body of ``POST /billing/reconcile``. An empty body reconciles everyone."""

    tenant_id: Annotated[str | None, Field(min_length=1, max_length=64)] = None
    dry_run: bool = False
    backfill: bool = False


class UsageRequest(BaseModel):
    tenant_id: Annotated[str, Field(min_length=1, max_length=64)]
    event_type: Annotated[str, Field(min_length=1, max_length=50)] = EDITED_IMAGE


class UsageAccepted(BaseModel):
    entry_id: str
    tenant_id: str
    event_type: str
    reconciliation_scheduled: bool


class HealthCheck(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    environment: str
    database: Literal["healthy", "unhealthy"]
    redis: Literal["healthy", "unhealthy"]
