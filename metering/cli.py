"""
Command line entry point.

    metering reconcile [--tenant ID] [--dry-run] [--backfill]
    metering worker
    metering serve [--host HOST] [--port PORT]
"""

import argparse
import asyncio
import json
import sys

from redis.asyncio import Redis

from metering.config import Settings, get_settings
from metering.errors import LedgerError, RunLockedError
from metering.meter.stripe_meter import create_metering_service
from metering.models import ReconciliationReport
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.store.sql import SqlBillingStore
from metering.utils.locking import RunLock
from metering.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_TENANT_ERRORS = 1
EXIT_FATAL = 2
EXIT_LOCKED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="metering", description="Usage reconciliation engine")
    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser("reconcile", help="Run one reconciliation pass")
    reconcile.add_argument("--tenant", dest="tenant_id", help="Only reconcile this tenant")
    reconcile.add_argument("--dry-run", action="store_true", help="Compute without writing")
    reconcile.add_argument("--backfill", action="store_true", help="Also close usage gaps")

    commands.add_parser("worker", help="Reconcile on a schedule until stopped")

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    return parser


async def run_reconcile(
    settings: Settings,
    tenant_id: str | None,
    dry_run: bool,
    backfill: bool,
) -> ReconciliationReport:
    """Run one pass with freshly built collaborators."""
    store = SqlBillingStore.from_settings(settings)
    metering = create_metering_service(settings)
    redis = Redis.from_url(str(settings.redis_url), decode_responses=True)
    try:
        orchestrator = ReconciliationOrchestrator.from_settings(
            settings,
            store,
            metering,
            run_lock=RunLock(redis, ttl_seconds=settings.run_lock_ttl_seconds),
        )
        return await orchestrator.run(tenant_id=tenant_id, dry_run=dry_run, backfill=backfill)
    finally:
        await metering.close()
        await store.close()
        await redis.aclose()


def _reconcile(args: argparse.Namespace, settings: Settings) -> int:
    try:
        report = asyncio.run(
            run_reconcile(settings, args.tenant_id, args.dry_run, args.backfill)
        )
    except RunLockedError as e:
        logger.warning("reconcile_locked", scope=e.scope)
        print(str(e), file=sys.stderr)
        return EXIT_LOCKED
    except LedgerError as e:
        logger.error("reconcile_aborted", error=str(e))
        print(f"Reconciliation aborted: {e}", file=sys.stderr)
        return EXIT_FATAL

    print(json.dumps(report.model_dump(mode="json"), indent=2))
    if report.aborted_reason:
        return EXIT_FATAL
    return EXIT_TENANT_ERRORS if report.total_errors else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    if args.command == "reconcile":
        return _reconcile(args, settings)

    if args.command == "worker":
        from metering.worker import main as worker_main

        try:
            asyncio.run(worker_main())
        except KeyboardInterrupt:
            print("\nShutdown requested...")
        return EXIT_OK

    import uvicorn

    uvicorn.run(
        "metering.api.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_config=None,
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
