"""Scheduled reconciliation worker."""

import asyncio
import signal
import time
from dataclasses import dataclass
from enum import Enum

from redis.asyncio import Redis

from metering.config import Settings, get_settings
from metering.errors import RunLockedError
from metering.meter.base import MeteringService
from metering.meter.stripe_meter import create_metering_service
from metering.models import ReconciliationReport
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.store.base import BillingStore
from metering.store.sql import SqlBillingStore
from metering.utils.locking import RunLock
from metering.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


class WorkerState(str, Enum):
    """Worker lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WorkerMetrics:
    """Worker operational metrics."""

    runs_completed: int = 0
    runs_failed: int = 0
    runs_skipped_locked: int = 0
    events_reported: int = 0
    events_backfilled: int = 0
    tenant_errors: int = 0
    uptime_seconds: float = 0.0
    last_run_finished: float = 0.0


class ReconciliationWorker:
    """Runs the orchestrator on a fixed interval until stopped."""

    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator | None = None,
        interval_seconds: int = 3600,
        backfill: bool = False,
        settings: Settings | None = None,
    ):
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._backfill = backfill
        self._settings = settings

        self._store: BillingStore | None = None
        self._metering: MeteringService | None = None
        self._redis: Redis | None = None

        self._state = WorkerState.STOPPED
        self._metrics = WorkerMetrics()
        self._start_time: float | None = None

        self._tasks: list[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationWorker":
        return cls(
            interval_seconds=settings.reconcile_interval_seconds,
            backfill=settings.backfill_on_schedule,
            settings=settings,
        )

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def metrics(self) -> WorkerMetrics:
        if self._start_time:
            self._metrics.uptime_seconds = time.time() - self._start_time
        return self._metrics

    async def initialize(self) -> None:
        """Build the orchestrator and its collaborators unless one was injected."""
        logger.info("worker_initializing")
        self._state = WorkerState.STARTING
        settings = self._settings or get_settings()

        try:
            if not self._orchestrator:
                self._store = SqlBillingStore.from_settings(settings)
                self._metering = create_metering_service(settings)
                self._redis = Redis.from_url(str(settings.redis_url), decode_responses=True)
                self._orchestrator = ReconciliationOrchestrator.from_settings(
                    settings,
                    self._store,
                    self._metering,
                    run_lock=RunLock(self._redis, ttl_seconds=settings.run_lock_ttl_seconds),
                )

            logger.info(
                "worker_initialized",
                interval_seconds=self._interval,
                backfill=self._backfill,
            )
        except Exception as e:
            logger.error("worker_initialization_failed", error=str(e))
            self._state = WorkerState.ERROR
            raise

    async def start(self) -> None:
        if self._state not in (WorkerState.STOPPED, WorkerState.ERROR):
            raise RuntimeError(f"Cannot start worker in state {self._state}")

        await self.initialize()

        self._state = WorkerState.RUNNING
        self._start_time = time.time()
        self._shutdown_event.clear()
        self._tasks = [asyncio.create_task(self._reconcile_loop(), name="reconcile")]

        logger.info("worker_started")

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if self._state != WorkerState.RUNNING:
            return

        logger.info("worker_stopping")
        self._state = WorkerState.STOPPING
        self._shutdown_event.set()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        # Only close what this worker created
        if self._metering:
            await self._metering.close()
        if self._store:
            await self._store.close()
        if self._redis:
            await self._redis.aclose()

        self._state = WorkerState.STOPPED
        logger.info("worker_stopped", metrics=self._metrics.__dict__)

    async def run_once(self) -> ReconciliationReport | None:
        """Run one full reconciliation. Returns None when another full run holds the lock."""
        try:
            report = await self._orchestrator.run(backfill=self._backfill)
        except RunLockedError:
            logger.info("scheduled_run_skipped_locked")
            self._metrics.runs_skipped_locked += 1
            return None

        self._metrics.runs_completed += 1
        self._metrics.events_reported += report.total_reported
        self._metrics.events_backfilled += report.total_backfilled
        self._metrics.tenant_errors += report.total_errors
        self._metrics.last_run_finished = time.time()
        return report

    async def _reconcile_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reconcile_loop_error", error=str(e))
                self._metrics.runs_failed += 1

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass


async def main() -> None:
    """Worker entry point."""
    settings = get_settings()
    configure_logging(settings)
    worker = ReconciliationWorker.from_settings(settings)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        asyncio.create_task(worker.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await worker.start()
        while worker.state == WorkerState.RUNNING:
            await asyncio.sleep(1)
    finally:
        if worker.state == WorkerState.RUNNING:
            await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
