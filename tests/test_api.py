import pytest
from fastapi.testclient import TestClient

from metering.api.main import create_app
from metering.api.routers.billing import reconcile_tenant_in_background
from metering.utils.locking import KEY_PREFIX, RunLock
from tests.conftest import build_orchestrator, make_subscription, minutes_into_period


ADMIN = {"X-API-Key": "test-admin-key"}


@pytest.fixture
def app(test_settings, store, metering, fake_redis):
    app = create_app(use_lifespan=False)
    app.state.store = store
    app.state.metering = metering
    app.state.redis = fake_redis
    app.state.orchestrator = build_orchestrator(
        store, metering, excluded=test_settings.excluded_tenant_ids, run_lock=RunLock(fake_redis)
    )
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _seed(store, pending: int = 2) -> None:
    store.add_tenant("acme", customer_ref="cus_acme0001", subscription=make_subscription("acme"))
    for i in range(pending):
        store.add_entry("acme", minutes_into_period(i))


def test_reconcile_requires_api_key(client):
    resp = client.post("/api/v1/billing/reconcile")
    assert resp.status_code == 401

    resp = client.post("/api/v1/billing/reconcile", headers={"X-API-Key": "wrong"})
    assert resp.status_code == 401


def test_reconcile_returns_report(client, store, metering):
    _seed(store)

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN, json={"backfill": True})

    assert resp.status_code == 200
    body = resp.json()
    assert body["total_reported"] == 2
    assert body["total_backfilled"] == 0
    assert body["total_errors"] == 0
    assert body["per_tenant"][0]["tenant_id"] == "acme"
    assert len(metering.events) == 2


def test_reconcile_without_body_runs_everyone(client, store):
    _seed(store, pending=1)

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN)

    assert resp.status_code == 200
    assert resp.json()["total_reported"] == 1


def test_reconcile_dry_run(client, store, metering):
    _seed(store)

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN, json={"dry_run": True})

    assert resp.status_code == 200
    assert resp.json()["dry_run"] is True
    assert resp.json()["total_reported"] == 2
    assert metering.calls == []


def test_reconcile_conflict_when_locked(client, fake_redis):
    fake_redis.data[KEY_PREFIX + "all"] = "someone-else"

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN)

    assert resp.status_code == 409


def test_reconcile_tenant_conflict_when_tenant_locked(client, store, fake_redis, metering):
    _seed(store, pending=1)
    fake_redis.data[KEY_PREFIX + "tenant:acme"] = "someone-else"

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN, json={"tenant_id": "acme"})

    assert resp.status_code == 409
    assert metering.calls == []


def test_reconcile_ledger_unavailable(client, store):
    store.fail_listing = True

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN)

    assert resp.status_code == 503


def test_record_usage_reports_in_background(client, store, metering):
    _seed(store, pending=0)

    resp = client.post("/api/v1/billing/usage", headers=ADMIN, json={"tenant_id": "acme"})

    assert resp.status_code == 202
    entry_id = resp.json()["entry_id"]
    # TestClient runs background tasks before returning
    assert store.entries[entry_id].reported
    assert entry_id in metering.events


def test_record_usage_validates_body(client):
    resp = client.post("/api/v1/billing/usage", headers=ADMIN, json={"tenant_id": ""})
    assert resp.status_code == 422


def test_record_usage_unknown_tenant_not_found(client, store, metering):
    resp = client.post("/api/v1/billing/usage", headers=ADMIN, json={"tenant_id": "ghost"})

    assert resp.status_code == 404
    assert "ghost" in resp.json()["detail"]
    assert store.entries == {}
    assert metering.calls == []


@pytest.mark.asyncio
async def test_background_reconcile_skips_when_locked(store, metering, fake_redis):
    _seed(store, pending=1)
    fake_redis.data[KEY_PREFIX + "tenant:acme"] = "someone-else"
    orchestrator = build_orchestrator(store, metering, run_lock=RunLock(fake_redis))

    await reconcile_tenant_in_background(orchestrator, "acme")

    assert metering.calls == []


def test_health(client, fake_redis):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"

    fake_redis.healthy = False
    resp = client.get("/health")
    assert resp.json()["status"] == "degraded"
    assert resp.json()["redis"] == "unhealthy"


def test_admin_surface_closed_without_key(monkeypatch, test_settings, client):
    monkeypatch.setattr(test_settings, "admin_api_key", None)

    resp = client.post("/api/v1/billing/reconcile", headers=ADMIN)

    assert resp.status_code == 503
