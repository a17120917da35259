"""
Billing endpoints.

Endpoints:
- POST /billing/reconcile : run a reconciliation and return its report
- POST /billing/usage     : record a billable event and report it in the background

Both require the admin ``X-API-Key``.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from metering.api.dependencies import get_orchestrator, get_store, require_admin
from metering.api.schemas import ReconcileRequest, UsageAccepted, UsageRequest
from metering.errors import LedgerError, RunLockedError, TenantNotFoundError
from metering.models import ReconciliationReport
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.store.base import BillingStore
from metering.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/billing",
    tags=["billing"],
    dependencies=[Depends(require_admin)],
)


@router.post(
    "/reconcile",
    response_model=ReconciliationReport,
    summary="Reconcile usage",
    description="Report unreported ledger entries and optionally backfill gaps.",
)
async def reconcile(
    body: ReconcileRequest | None = None,
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> ReconciliationReport:
    body = body or ReconcileRequest()
    try:
        return await orchestrator.run(
            tenant_id=body.tenant_id,
            dry_run=body.dry_run,
            backfill=body.backfill,
        )
    except RunLockedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except LedgerError as e:
        logger.error("reconcile_ledger_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing ledger unavailable",
        ) from e


async def reconcile_tenant_in_background(
    orchestrator: ReconciliationOrchestrator,
    tenant_id: str,
) -> None:
    """Report a tenant's new usage right away; the scheduled run catches misses."""
    try:
        report = await orchestrator.run(tenant_id=tenant_id)
    except RunLockedError:
        # A run holding this tenant is in flight and will pick the entry up
        logger.info("optimistic_report_skipped_locked", tenant_id=tenant_id)
        return
    except Exception:
        logger.exception("optimistic_report_failed", tenant_id=tenant_id)
        return

    logger.info(
        "optimistic_report_complete",
        tenant_id=tenant_id,
        reported=report.total_reported,
        errors=report.total_errors,
    )


@router.post(
    "/usage",
    response_model=UsageAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record usage",
    description="Append a billable event to the ledger and report it asynchronously.",
)
async def record_usage(
    body: UsageRequest,
    background_tasks: BackgroundTasks,
    store: BillingStore = Depends(get_store),
    orchestrator: ReconciliationOrchestrator = Depends(get_orchestrator),
) -> UsageAccepted:
    try:
        entry = await store.append_entry(body.tenant_id, event_type=body.event_type)
    except TenantNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except LedgerError as e:
        logger.error("usage_append_failed", tenant_id=body.tenant_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing ledger unavailable",
        ) from e

    background_tasks.add_task(reconcile_tenant_in_background, orchestrator, body.tenant_id)
    logger.info("usage_recorded", tenant_id=body.tenant_id, entry_id=entry.id)

    return UsageAccepted(
        entry_id=entry.id,
        tenant_id=entry.tenant_id,
        event_type=entry.event_type,
        reconciliation_scheduled=True,
    )
