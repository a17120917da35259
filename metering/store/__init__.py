"""Billing ledger datastore."""

from metering.store.base import BillingStore
from metering.store.sql import SqlBillingStore
from metering.store.tables import Base, BillingEventRow, SubscriptionRow, TenantRow

__all__ = [
    "BillingStore",
    "SqlBillingStore",
    "Base",
    "BillingEventRow",
    "SubscriptionRow",
    "TenantRow",
]
