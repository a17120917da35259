"""
Billing domain models.

Entities read from the datastore are validated, frozen Pydantic models.
Run results are plain mutable models that the reconciliation steps fill in
and the API serialises unchanged.
"""

from datetime import date, datetime, timezone
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

EDITED_IMAGE = "edited_image"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything in the ledger is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Tenant(BaseModel):
    """A billing entity, one per dealer company."""

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(min_length=1, max_length=64)]
    name: str = ""
    external_customer_ref: str | None = None
    active_subscription_ref: str | None = None
    is_active: bool = True


class Meter(BaseModel):
    """The external usage counter a metered price reports to."""

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(min_length=1)]
    event_name: Annotated[str, Field(min_length=1, max_length=100)]


class Subscription(BaseModel):
    """
    The tenant's active metered subscription.

    ``meter`` is None when the subscription's price carries no metered
    component; such tenants are skipped by reconciliation.
    """

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(min_length=1)]
    tenant_id: str
    status: str = "active"
    current_period_start: datetime
    current_period_end: datetime
    included_usage: Annotated[int, Field(ge=0)] = 0
    meter: Meter | None = None

    @field_validator("current_period_start", "current_period_end")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_period(self) -> "Subscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self

    @property
    def is_metered(self) -> bool:
        return self.meter is not None


class LedgerEntry(BaseModel):
    """One locally recorded billable occurrence."""

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(min_length=1, max_length=64)]
    tenant_id: str
    event_type: str = EDITED_IMAGE
    created_at: datetime
    reported: bool = False
    reported_at: datetime | None = None
    external_event_ref: str | None = None

    @field_validator("created_at", "reported_at")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None


class UsageSnapshot(BaseModel):
    """Local versus remote usage for one tenant and billing period."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    period_start: datetime
    period_end: datetime
    months: list[date]
    local_total: Annotated[int, Field(ge=0)]
    remote_total: Annotated[int, Field(ge=0)]

    @property
    def gap(self) -> int:
        """Positive: under-reported. Negative: billed beyond the ledger."""
        return self.local_total - self.remote_total


class TenantResult(BaseModel):
    """Per-tenant outcome of one reconciliation run."""

    tenant_id: str
    tenant_name: str = ""
    unreported_count: int = 0
    included_count: int = 0
    reported_count: int = 0
    backfilled_count: int = 0
    gap_anomaly: int | None = None
    skipped_reason: str | None = None
    failed_entry_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


class ReconciliationReport(BaseModel):
    """Summary returned by the orchestrator."""

    dry_run: bool = False
    backfill: bool = False
    started_at: datetime
    finished_at: datetime | None = None
    aborted_reason: str | None = None
    per_tenant: list[TenantResult] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_reported(self) -> int:
        return sum(r.reported_count for r in self.per_tenant)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_backfilled(self) -> int:
        return sum(r.backfilled_count for r in self.per_tenant)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_errors(self) -> int:
        return sum(len(r.errors) for r in self.per_tenant)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed_tenant_ids(self) -> list[str]:
        return [r.tenant_id for r in self.per_tenant if r.errors]
