"""Pytest configuration, fixtures and in-memory fakes."""

import itertools
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import pytest

from metering.config import Settings, get_settings
from metering.errors import LedgerError, TenantNotFoundError
from metering.meter.base import MeteringService
from metering.models import EDITED_IMAGE, LedgerEntry, Meter, Subscription, Tenant
from metering.reconcile.allocator import QuotaAllocator
from metering.reconcile.backfill import GapReconciler
from metering.reconcile.orchestrator import ReconciliationOrchestrator
from metering.reconcile.reporter import MeteringReporter
from metering.store.base import BillingStore
from metering.utils.locking import RunLock

PERIOD_START = datetime(2024, 3, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 4, 1, tzinfo=timezone.utc)


async def no_sleep(seconds: float) -> None:
    return None


class FakeBillingStore(BillingStore):
    """Dict-backed ledger honouring the ``reported = false`` write guard."""

    def __init__(self) -> None:
        self.tenants: dict[str, Tenant] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.entries: dict[str, LedgerEntry] = {}
        self.mark_calls: list[tuple[list[str], str | None]] = []
        self.count_calls = 0
        self.fail_listing = False
        self.fail_subscription_for: set[str] = set()
        self._ids = itertools.count(1)

    def add_tenant(
        self,
        tenant_id: str,
        customer_ref: str | None = "cus_test0001",
        subscription: Subscription | None = None,
    ) -> Tenant:
        tenant = Tenant(id=tenant_id, name=tenant_id.title(), external_customer_ref=customer_ref)
        self.tenants[tenant_id] = tenant
        if subscription is not None:
            self.subscriptions[tenant_id] = subscription
        return tenant

    def add_entry(
        self,
        tenant_id: str,
        created_at: datetime,
        reported: bool = False,
        external_event_ref: str | None = None,
        entry_id: str | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            id=entry_id or f"evt-{next(self._ids):04d}",
            tenant_id=tenant_id,
            created_at=created_at,
            reported=reported,
            reported_at=created_at if reported else None,
            external_event_ref=external_event_ref,
        )
        self.entries[entry.id] = entry
        return entry

    async def list_tenants_with_billing(self, tenant_id: str | None = None) -> list[Tenant]:
        if self.fail_listing:
            raise LedgerError("connection refused")
        return [
            t
            for t in self.tenants.values()
            if t.external_customer_ref and (tenant_id is None or t.id == tenant_id)
        ]

    async def get_active_subscription(self, tenant_id: str) -> Subscription | None:
        if tenant_id in self.fail_subscription_for:
            raise LedgerError(f"subscription lookup failed for {tenant_id}")
        return self.subscriptions.get(tenant_id)

    async def list_unreported_entries(self, tenant_id: str) -> list[LedgerEntry]:
        entries = [e for e in self.entries.values() if e.tenant_id == tenant_id and not e.reported]
        return sorted(entries, key=lambda e: (e.created_at, e.id))

    async def count_reported_entries(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime | None = None,
        billable_only: bool = False,
    ) -> int:
        self.count_calls += 1
        return sum(
            1
            for e in self.entries.values()
            if e.tenant_id == tenant_id
            and e.reported
            and e.created_at >= start
            and (end is None or e.created_at < end)
            and (not billable_only or e.external_event_ref is not None)
        )

    async def mark_entries_reported(
        self,
        entry_ids: list[str],
        external_event_ref: str | None = None,
        reported_at: datetime | None = None,
    ) -> int:
        self.mark_calls.append((list(entry_ids), external_event_ref))
        updated = 0
        for entry_id in entry_ids:
            entry = self.entries.get(entry_id)
            if entry is None or entry.reported:
                continue
            self.entries[entry_id] = entry.model_copy(
                update={
                    "reported": True,
                    "reported_at": reported_at or datetime.now(timezone.utc),
                    "external_event_ref": external_event_ref,
                }
            )
            updated += 1
        return updated

    async def append_entry(
        self,
        tenant_id: str,
        event_type: str = EDITED_IMAGE,
        created_at: datetime | None = None,
    ) -> LedgerEntry:
        if tenant_id not in self.tenants:
            raise TenantNotFoundError(tenant_id)
        return self.add_entry(tenant_id, created_at or datetime.now(timezone.utc))


class FakeMeteringService(MeteringService):
    """
    Records submissions and deduplicates on idempotency key.

    ``failures`` maps an idempotency key to exceptions raised on successive
    attempts before the call succeeds.
    """

    def __init__(self) -> None:
        self.events: dict[str, dict] = {}
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}
        self.remote_usage: dict[str, int] = {}
        self.usage_error: Exception | None = None
        self.closed = False

    async def submit_usage_event(
        self,
        meter: Meter,
        idempotency_key: str,
        customer_ref: str,
        value: int = 1,
        timestamp: datetime | None = None,
    ) -> str:
        self.calls.append(idempotency_key)
        pending = self.failures.get(idempotency_key)
        if pending:
            raise pending.pop(0)
        if idempotency_key not in self.events:
            self.events[idempotency_key] = {
                "meter": meter.id,
                "customer": customer_ref,
                "value": value,
                "timestamp": timestamp,
            }
        return f"mev_{idempotency_key}"

    async def get_aggregated_usage(
        self,
        meter: Meter,
        customer_ref: str,
        start: datetime,
        end: datetime,
    ) -> int:
        if self.usage_error is not None:
            raise self.usage_error
        return self.remote_usage.get(customer_ref, 0) + sum(
            e["value"]
            for e in self.events.values()
            if e["customer"] == customer_ref and e["meter"] == meter.id
        )

    async def close(self) -> None:
        self.closed = True


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for the run lock and health check."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.healthy = True
        self.renewals = 0
        self.fail_renew = False

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def get(self, key: str):
        return self.data.get(key)

    async def eval(self, script: str, numkeys: int, key: str, token: str, *args) -> int:
        if self.data.get(key) != token:
            return 0
        if "pexpire" in script:
            if self.fail_renew:
                return 0
            self.renewals += 1
            return 1
        del self.data[key]
        return 1

    async def ping(self) -> bool:
        if not self.healthy:
            raise ConnectionError("redis down")
        return True


def make_subscription(
    tenant_id: str,
    included_usage: int = 0,
    meter: Meter | None = None,
    metered: bool = True,
) -> Subscription:
    if metered and meter is None:
        meter = Meter(id="mtr_images", event_name="edited_image")
    return Subscription(
        id=f"sub_{tenant_id}",
        tenant_id=tenant_id,
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
        included_usage=included_usage,
        meter=meter if metered else None,
    )


def minutes_into_period(n: int) -> datetime:
    return PERIOD_START + timedelta(minutes=n)


def build_orchestrator(
    store, metering, excluded=None, run_lock: RunLock | None = None
) -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator(
        store=store,
        allocator=QuotaAllocator(store),
        reporter=MeteringReporter(store, metering, retry_delay_seconds=0, sleep=no_sleep),
        gap_reconciler=GapReconciler(store, metering, retry_delay_seconds=0, sleep=no_sleep),
        excluded_tenant_ids=excluded,
        run_lock=run_lock,
    )


@pytest.fixture
def store() -> FakeBillingStore:
    return FakeBillingStore()


@pytest.fixture
def metering() -> FakeMeteringService:
    return FakeMeteringService()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def meter() -> Meter:
    return Meter(id="mtr_images", event_name="edited_image")


@pytest.fixture
def test_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[Settings]:
    """Settings with an admin key and no Prometheus, installed as the cached instance."""
    monkeypatch.setenv("ADMIN_API_KEY", "test-admin-key")
    monkeypatch.setenv("PROMETHEUS_ENABLED", "false")
    monkeypatch.setenv("EXCLUDED_TENANT_IDS", "internal-test")
    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()
