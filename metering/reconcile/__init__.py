"""Usage reconciliation steps."""

from metering.reconcile.allocator import QuotaAllocation, QuotaAllocator, partition_entries
from metering.reconcile.backfill import BackfillOutcome, GapReconciler, backfill_key
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.reconcile.reporter import MeteringReporter, ReportOutcome

__all__ = [
    "QuotaAllocation",
    "QuotaAllocator",
    "partition_entries",
    "BackfillOutcome",
    "GapReconciler",
    "backfill_key",
    "ReconciliationOrchestrator",
    "MeteringReporter",
    "ReportOutcome",
]
