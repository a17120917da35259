"""
Gap reconciliation (backfill).

Compares what the ledger says was billed in the current period against the
metering service's own event aggregation and emits correction events for
any shortfall. Remote usage is read from meter event summaries: invoice
previews leave out metered usage that has not been finalised yet and
undercount.

Correction keys have the form ``backfill_<tenant>_<YYYY-MM-01>_<n>`` where
``n`` is the position of the unit within the period's remote total. A rerun
before the remote total catches up reuses the same keys and is deduplicated;
a rerun after a partial backfill continues where the last one stopped.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date

from metering.meter.base import MeteringService
from metering.models import Subscription, Tenant, UsageSnapshot
from metering.reconcile.reporter import Sleep
from metering.store.base import BillingStore
from metering.utils.logging import get_logger
from metering.utils.periods import billing_months, months_bounds
from metering.utils.retry import call_with_retry

logger = get_logger(__name__)


def backfill_key(tenant_id: str, first_month: date, sequence: int) -> str:
    return f"backfill_{tenant_id}_{first_month.isoformat()}_{sequence}"


@dataclass
class BackfillOutcome:
    """Result of one tenant's gap check."""

    snapshot: UsageSnapshot | None = None
    backfilled: int = 0
    anomaly: int | None = None
    errors: list[str] = field(default_factory=list)


class GapReconciler:
    """Detects and closes positive gaps between ledger and remote usage."""

    def __init__(
        self,
        store: BillingStore,
        metering: MeteringService,
        delay_seconds: float = 0.3,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._metering = metering
        self._delay = delay_seconds
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._sleep = sleep

    async def snapshot(self, tenant: Tenant, subscription: Subscription) -> UsageSnapshot:
        """Read local and remote totals for the current billing period."""
        months = billing_months(subscription.current_period_start, subscription.current_period_end)
        start, end = months_bounds(months)

        # Entries absorbed by the included allowance never reach the meter
        local_total = await self._store.count_reported_entries(
            tenant.id, start=start, end=end, billable_only=True
        )

        result = await call_with_retry(
            self._metering.get_aggregated_usage,
            subscription.meter,
            tenant.external_customer_ref,
            subscription.current_period_start,
            subscription.current_period_end,
            max_attempts=self._max_attempts,
            delay_seconds=self._retry_delay,
        )
        if not result.ok:
            raise RemoteUsageUnavailable(result.error or "unknown error")

        return UsageSnapshot(
            tenant_id=tenant.id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            months=months,
            local_total=local_total,
            remote_total=result.value,
        )

    async def reconcile(
        self,
        tenant: Tenant,
        subscription: Subscription,
        dry_run: bool = False,
    ) -> BackfillOutcome:
        outcome = BackfillOutcome()

        try:
            snapshot = await self.snapshot(tenant, subscription)
        except RemoteUsageUnavailable as e:
            logger.error("remote_usage_unavailable", tenant_id=tenant.id, error=str(e))
            outcome.errors.append(f"Could not determine remote usage: {e}")
            return outcome

        outcome.snapshot = snapshot
        gap = snapshot.gap
        logger.info(
            "usage_gap_checked",
            tenant_id=tenant.id,
            local_total=snapshot.local_total,
            remote_total=snapshot.remote_total,
            gap=gap,
            months=[m.isoformat() for m in snapshot.months],
        )

        if gap == 0:
            return outcome

        if gap < 0:
            # Billed beyond what the ledger knows about; needs a human
            outcome.anomaly = gap
            logger.warning(
                "usage_gap_negative",
                tenant_id=tenant.id,
                gap=gap,
                local_total=snapshot.local_total,
                remote_total=snapshot.remote_total,
            )
            return outcome

        if dry_run:
            outcome.backfilled = gap
            logger.info("dry_run_backfill", tenant_id=tenant.id, would_backfill=gap)
            return outcome

        first_month = snapshot.months[0]
        for i in range(gap):
            if i:
                await self._sleep(self._delay)

            sequence = snapshot.remote_total + i
            key = backfill_key(tenant.id, first_month, sequence)
            result = await call_with_retry(
                self._metering.submit_usage_event,
                subscription.meter,
                idempotency_key=key,
                customer_ref=tenant.external_customer_ref,
                value=1,
                max_attempts=self._max_attempts,
                delay_seconds=self._retry_delay,
            )
            if not result.ok:
                # Stop so the next run resumes from a contiguous sequence
                outcome.errors.append(f"Backfill event {i + 1} of {gap} failed: {result.error}")
                logger.error(
                    "backfill_event_failed",
                    tenant_id=tenant.id,
                    identifier=key,
                    error=result.error,
                )
                break
            outcome.backfilled += 1

        logger.info("backfill_complete", tenant_id=tenant.id, backfilled=outcome.backfilled, gap=gap)
        return outcome


class RemoteUsageUnavailable(Exception):
    """Aggregated usage could not be read from the metering service."""
