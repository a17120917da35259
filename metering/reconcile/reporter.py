"""Usage reporting of billable ledger entries to the metering service."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from metering.meter.base import MeteringService
from metering.models import LedgerEntry, Meter, Tenant
from metering.store.base import BillingStore
from metering.utils.logging import get_logger
from metering.utils.retry import call_with_retry

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class ReportOutcome:
    """Result of reporting one tenant's billable batch."""

    reported: int = 0
    would_report: list[str] = field(default_factory=list)
    failed_entry_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class MeteringReporter:
    """
    Submits billable entries one at a time.

    Each entry's id is its idempotency key, and each success is written to
    the ledger before the next submission, so an interrupted batch resumes
    without double billing.
    """

    def __init__(
        self,
        store: BillingStore,
        metering: MeteringService,
        delay_seconds: float = 0.2,
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

    async def report(
        self,
        tenant: Tenant,
        meter: Meter,
        entries: list[LedgerEntry],
        dry_run: bool = False,
    ) -> ReportOutcome:
        outcome = ReportOutcome()

        if dry_run:
            outcome.would_report = [e.id for e in entries]
            outcome.reported = len(entries)
            if entries:
                logger.info("dry_run_report", tenant_id=tenant.id, would_report=len(entries))
            return outcome

        for index, entry in enumerate(entries):
            if index:
                # Stripe throttles bursts of meter events per account
                await self._sleep(self._delay)

            result = await call_with_retry(
                self._metering.submit_usage_event,
                meter,
                idempotency_key=entry.id,
                customer_ref=tenant.external_customer_ref,
                value=1,
                timestamp=entry.created_at,
                max_attempts=self._max_attempts,
                delay_seconds=self._retry_delay,
            )

            if not result.ok:
                message = f"Failed to report event {entry.id}: {result.error}"
                logger.error(
                    "usage_report_failed",
                    tenant_id=tenant.id,
                    entry_id=entry.id,
                    attempts=result.attempts,
                    exhausted=result.exhausted,
                    error=result.error,
                )
                outcome.errors.append(message)
                outcome.failed_entry_ids.append(entry.id)
                continue

            # Ledger errors propagate: the tenant run stops and the entry is
            # resubmitted with the same key next time
            await self._store.mark_entries_reported(
                [entry.id],
                external_event_ref=result.value,
                reported_at=datetime.now(timezone.utc),
            )
            outcome.reported += 1
            logger.info(
                "usage_reported",
                tenant_id=tenant.id,
                entry_id=entry.id,
                external_event_ref=result.value,
            )

        return outcome
