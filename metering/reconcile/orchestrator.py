"""Reconciliation orchestrator coordinating allocation, reporting and backfill."""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from metering.config import Settings
from metering.errors import RunLockedError
from metering.meter.base import MeteringService
from metering.models import ReconciliationReport, Subscription, Tenant, TenantResult
from metering.reconcile.allocator import QuotaAllocator
from metering.reconcile.backfill import GapReconciler
from metering.reconcile.reporter import MeteringReporter
from metering.store.base import BillingStore
from metering.utils.locking import LockLease, RunLock
from metering.utils.logging import bind_run_context, clear_run_context, get_logger

logger = get_logger(__name__)

SKIP_NO_SUBSCRIPTION = "no active subscription"
SKIP_NOT_METERED = "subscription has no metered price"
SKIP_LOCKED = "another run is processing this tenant"


class ReconciliationOrchestrator:
    """
    Runs one reconciliation pass over every billable tenant.

    Tenants are processed sequentially. A failure inside one tenant is
    recorded on that tenant's result and the run moves on; only a failure
    to list tenants aborts the run.

    With a ``run_lock``, live runs hold ``tenant:<id>`` while processing a
    tenant, and full runs also hold ``all``. A full run skips tenants that
    another run holds; a single-tenant run raises ``RunLockedError``. Dry
    runs write nothing and take no locks.
    """

    def __init__(
        self,
        store: BillingStore,
        allocator: QuotaAllocator,
        reporter: MeteringReporter,
        gap_reconciler: GapReconciler,
        excluded_tenant_ids: list[str] | None = None,
        run_lock: RunLock | None = None,
    ) -> None:
        self._store = store
        self._allocator = allocator
        self._reporter = reporter
        self._gap_reconciler = gap_reconciler
        self._excluded = frozenset(excluded_tenant_ids or [])
        self._run_lock = run_lock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: BillingStore,
        metering: MeteringService,
        run_lock: RunLock | None = None,
    ) -> "ReconciliationOrchestrator":
        """Wire the reconciliation steps from configuration."""
        return cls(
            store=store,
            allocator=QuotaAllocator(store),
            reporter=MeteringReporter(
                store,
                metering,
                delay_seconds=settings.report_delay_seconds,
                max_attempts=settings.max_submit_attempts,
                retry_delay_seconds=settings.retry_delay_seconds,
            ),
            gap_reconciler=GapReconciler(
                store,
                metering,
                delay_seconds=settings.backfill_delay_seconds,
                max_attempts=settings.max_submit_attempts,
                retry_delay_seconds=settings.retry_delay_seconds,
            ),
            excluded_tenant_ids=settings.excluded_tenant_ids,
            run_lock=run_lock,
        )

    @asynccontextmanager
    async def _hold(self, scope: str | None, dry_run: bool) -> AsyncIterator[LockLease | None]:
        if self._run_lock is None or scope is None or dry_run:
            yield None
            return
        async with self._run_lock.hold(scope) as lease:
            yield lease

    async def run(
        self,
        tenant_id: str | None = None,
        dry_run: bool = False,
        backfill: bool = False,
    ) -> ReconciliationReport:
        """
        Reconcile all tenants, or only ``tenant_id``.

        Args:
            tenant_id: Restrict the run to one tenant
            dry_run: Compute everything, write nothing
            backfill: Also close gaps against the remote aggregation

        Raises:
            LedgerError: If the tenant list cannot be read
            RunLockedError: If another full run is in flight, or another run
                holds ``tenant_id``
        """
        report = ReconciliationReport(
            dry_run=dry_run,
            backfill=backfill,
            started_at=datetime.now(timezone.utc),
        )
        bind_run_context(run_id=uuid.uuid4().hex[:12], dry_run=dry_run)
        try:
            # Single-tenant runs are serialised by the tenant lock alone
            outer_scope = RunLock.scope_for(None) if tenant_id is None else None
            async with self._hold(outer_scope, dry_run) as lease:
                await self._run_tenants(report, tenant_id, lease)

            report.finished_at = datetime.now(timezone.utc)
            logger.info(
                "reconciliation_complete",
                total_reported=report.total_reported,
                total_backfilled=report.total_backfilled,
                total_errors=report.total_errors,
                aborted_reason=report.aborted_reason,
            )
            return report
        finally:
            clear_run_context("run_id", "dry_run")

    async def _run_tenants(
        self,
        report: ReconciliationReport,
        tenant_id: str | None,
        lease: LockLease | None,
    ) -> None:
        tenants = await self._store.list_tenants_with_billing(tenant_id)
        logger.info(
            "reconciliation_started",
            tenant_id=tenant_id,
            tenants=len(tenants),
            backfill=report.backfill,
        )

        for index, tenant in enumerate(tenants):
            if lease is not None and lease.lost:
                report.aborted_reason = "run lock lost"
                logger.error("reconciliation_aborted_lock_lost", remaining=len(tenants) - index)
                return
            if tenant.id in self._excluded:
                logger.debug("tenant_excluded", tenant_id=tenant.id)
                continue

            try:
                async with self._hold(RunLock.scope_for(tenant.id), report.dry_run):
                    result = await self._reconcile_tenant(tenant, report.dry_run, report.backfill)
            except RunLockedError:
                if tenant_id is not None:
                    raise
                result = TenantResult(
                    tenant_id=tenant.id, tenant_name=tenant.name, skipped_reason=SKIP_LOCKED
                )
                logger.info("tenant_skipped", tenant_id=tenant.id, reason=SKIP_LOCKED)
            report.per_tenant.append(result)

    async def _reconcile_tenant(
        self,
        tenant: Tenant,
        dry_run: bool,
        backfill: bool,
    ) -> TenantResult:
        result = TenantResult(tenant_id=tenant.id, tenant_name=tenant.name)

        try:
            subscription = await self._store.get_active_subscription(tenant.id)
            if subscription is None:
                result.skipped_reason = SKIP_NO_SUBSCRIPTION
            elif not subscription.is_metered:
                result.skipped_reason = SKIP_NOT_METERED
            else:
                await self._report_usage(tenant, subscription, result, dry_run)
                if backfill:
                    await self._backfill(tenant, subscription, result, dry_run)
        except Exception as e:
            logger.exception("tenant_reconciliation_failed", tenant_id=tenant.id)
            result.errors.append(str(e) or e.__class__.__name__)

        if result.skipped_reason:
            logger.info("tenant_skipped", tenant_id=tenant.id, reason=result.skipped_reason)
        return result

    async def _report_usage(
        self,
        tenant: Tenant,
        subscription: Subscription,
        result: TenantResult,
        dry_run: bool,
    ) -> None:
        entries = await self._store.list_unreported_entries(tenant.id)
        result.unreported_count = len(entries)
        if not entries:
            return

        allocation = await self._allocator.allocate(subscription, entries, dry_run=dry_run)
        result.included_count = len(allocation.free)
        if not allocation.billable:
            return

        outcome = await self._reporter.report(
            tenant, subscription.meter, allocation.billable, dry_run=dry_run
        )
        result.reported_count = outcome.reported
        result.failed_entry_ids.extend(outcome.failed_entry_ids)
        result.errors.extend(outcome.errors)

    async def _backfill(
        self,
        tenant: Tenant,
        subscription: Subscription,
        result: TenantResult,
        dry_run: bool,
    ) -> None:
        outcome = await self._gap_reconciler.reconcile(tenant, subscription, dry_run=dry_run)
        result.backfilled_count = outcome.backfilled
        result.gap_anomaly = outcome.anomaly
        result.errors.extend(outcome.errors)
