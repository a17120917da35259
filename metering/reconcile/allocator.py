"""
Included-usage allocation.

Splits a tenant's unreported ledger entries into the part covered by the
subscription's included allowance and the part that must be billed. The
oldest entries are treated as free first.
"""

from dataclasses import dataclass, field

from metering.models import LedgerEntry, Subscription
from metering.store.base import BillingStore
from metering.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class QuotaAllocation:
    """Free and billable partitions of one unreported batch."""

    free: list[LedgerEntry] = field(default_factory=list)
    billable: list[LedgerEntry] = field(default_factory=list)
    already_reported: int = 0
    allowance: int = 0

    @property
    def remaining_allowance(self) -> int:
        used = self.already_reported + len(self.free)
        return max(0, self.allowance - used)


def partition_entries(
    entries: list[LedgerEntry],
    allowance: int,
    already_reported: int,
) -> QuotaAllocation:
    """
    Partition ``entries`` (oldest first) against the included allowance.

    Args:
        entries: Unreported entries ordered by creation time
        allowance: Included usage per billing period
        already_reported: Entries already reported in the current period
    """
    if allowance < 0 or already_reported < 0:
        raise ValueError("allowance and already_reported must be non-negative")

    ordered = sorted(entries, key=lambda e: (e.created_at, e.id))
    allocation = QuotaAllocation(already_reported=already_reported, allowance=allowance)

    if allowance == 0:
        allocation.billable = ordered
    elif already_reported + len(ordered) <= allowance:
        allocation.free = ordered
    elif already_reported < allowance:
        free_remaining = allowance - already_reported
        allocation.free = ordered[:free_remaining]
        allocation.billable = ordered[free_remaining:]
    else:
        allocation.billable = ordered

    return allocation


class QuotaAllocator:
    """Applies the included allowance to a tenant's unreported entries."""

    def __init__(self, store: BillingStore) -> None:
        self._store = store

    async def allocate(
        self,
        subscription: Subscription,
        entries: list[LedgerEntry],
        dry_run: bool = False,
    ) -> QuotaAllocation:
        """
        Partition ``entries`` and mark the free ones reported.

        Free entries are marked without an external event reference. With
        ``dry_run`` the partition is computed but nothing is written.
        """
        if not entries:
            return QuotaAllocation(allowance=subscription.included_usage)

        if subscription.included_usage == 0:
            return partition_entries(entries, 0, 0)

        already_reported = await self._store.count_reported_entries(
            subscription.tenant_id,
            start=subscription.current_period_start,
            end=subscription.current_period_end,
        )
        allocation = partition_entries(entries, subscription.included_usage, already_reported)

        logger.info(
            "quota_allocated",
            tenant_id=subscription.tenant_id,
            allowance=subscription.included_usage,
            already_reported=already_reported,
            free=len(allocation.free),
            billable=len(allocation.billable),
            dry_run=dry_run,
        )

        if allocation.free and not dry_run:
            await self._store.mark_entries_reported([e.id for e in allocation.free])

        return allocation
