"""SQLAlchemy table mappings for tenants, subscriptions and the billing ledger."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TenantRow(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), default="")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"), index=True)
    status: Mapped[str] = mapped_column(String(32), default="active")
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    included_usage: Mapped[int] = mapped_column(Integer, default=0)
    # Null when the price has no metered component
    meter_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meter_event_name: Mapped[str | None] = mapped_column(String(100), nullable=True)


class BillingEventRow(Base):
    __tablename__ = "billing_events"
    __table_args__ = (
        Index("ix_billing_events_tenant_reported_created", "tenant_id", "reported", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id"))
    event_type: Mapped[str] = mapped_column(String(50), default="edited_image")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    reported: Mapped[bool] = mapped_column(Boolean, default=False)
    reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
