"""
Billing ledger datastore interface.

The reconciliation engine only touches the relational store through this
contract, so tests can swap in an in-memory fake.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from metering.models import EDITED_IMAGE, LedgerEntry, Subscription, Tenant


class BillingStore(ABC):
    """
    Abstract base class for the billing ledger datastore.

    Implementations must:
    - Return unreported entries oldest first
    - Never modify an entry that is already reported
    - Commit each ``mark_entries_reported`` call on its own
    """

    @abstractmethod
    async def list_tenants_with_billing(self, tenant_id: str | None = None) -> list[Tenant]:
        """
        List tenants that have an external customer reference.

        Args:
            tenant_id: Restrict the listing to this tenant
        """

    @abstractmethod
    async def get_active_subscription(self, tenant_id: str) -> Subscription | None:
        """Return the tenant's active subscription, if any."""

    @abstractmethod
    async def list_unreported_entries(self, tenant_id: str) -> list[LedgerEntry]:
        """Return all unreported ledger entries for a tenant, oldest first."""

    @abstractmethod
    async def count_reported_entries(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime | None = None,
        billable_only: bool = False,
    ) -> int:
        """
        Count reported entries created in ``[start, end)``.

        Args:
            tenant_id: Tenant to count for
            start: Inclusive lower bound on ``created_at``
            end: Exclusive upper bound, or None for open-ended
            billable_only: Only count entries transmitted to the metering
                service (those carrying an external event reference)
        """

    @abstractmethod
    async def mark_entries_reported(
        self,
        entry_ids: list[str],
        external_event_ref: str | None = None,
        reported_at: datetime | None = None,
    ) -> int:
        """
        Flag entries as reported in a single transaction.

        Entries that are already reported are left untouched.

        Returns:
            Number of entries that changed state
        """

    @abstractmethod
    async def append_entry(
        self,
        tenant_id: str,
        event_type: str = EDITED_IMAGE,
        created_at: datetime | None = None,
    ) -> LedgerEntry:
        """Record a new billable occurrence. Raises TenantNotFoundError for an unknown tenant."""

    async def health_check(self) -> bool:
        """Check that the datastore answers queries."""
        return True

    async def close(self) -> None:
        """Release connections."""
