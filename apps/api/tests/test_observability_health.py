import pytest
from httpx import ASGITransport, AsyncClient

from cafe_loyalty_api.core.settings import settings
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.observability.scheduler import get_scheduler_store


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_endpoints(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        root = await client.get("/healthz")
        assert root.status_code == 200
        assert root.json()["status"] == "ok"
        assert root.json()["version"] == "0.1.0"

        versioned = await client.get("/api/v1/healthz")
        assert versioned.json() == {"status": "ok"}

        ready = await client.get("/api/v1/readyz")
        assert ready.status_code == 200
        payload = ready.json()
        assert payload["status"] == "ready"
        assert payload["components"]["database"]["status"] == "ready"
        assert payload["components"]["ledger_scheduler"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_readiness_reports_failing_scheduler_jobs(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "ledger_job_scheduler_enabled", True)

    class _RunningScheduler:
        is_running = True

    app.state.ledger_job_scheduler = _RunningScheduler()
    get_scheduler_store().record_dispatch("expiration_sweep", "cafe_loyalty_api.jobs.ledger.sweep_expired_points")
    get_scheduler_store().record_failure(
        "expiration_sweep",
        "cafe_loyalty_api.jobs.ledger.sweep_expired_points",
        runtime_seconds=0.1,
        attempts=3,
        error="database is locked",
    )

    async with _client(app) as client:
        ready = await client.get("/api/v1/readyz")

    payload = ready.json()
    assert payload["status"] == "error"
    assert payload["components"]["ledger_scheduler"]["status"] == "error"
    assert "expiration_sweep" in payload["components"]["ledger_scheduler"]["detail"]


@pytest.mark.asyncio
async def test_ledger_observability_snapshot(app_with_db, make_card, make_reward) -> None:
    app, session_factory = app_with_db
    card = await make_card(session_factory)
    reward = await make_reward(session_factory, points_required=50)

    async with _client(app) as client:
        await client.post(f"/api/v1/loyalty/cards/{card.id}/awards", json={"lineItems": [{"pointValue": 40}]})
        await client.post(f"/api/v1/loyalty/cards/{card.id}/awards", json={"lineItems": []})
        await client.post(f"/api/v1/loyalty/cards/{card.id}/redemptions", json={"rewardId": str(reward.id)})

        response = await client.get("/api/v1/observability/ledger")

    assert response.status_code == 200
    ledger = response.json()["ledger"]
    assert ledger["operations"]["awards"] == 1
    assert ledger["operations"]["awards_skipped"] == 1
    assert ledger["operations"]["sweeps"] == 1
    assert ledger["points"]["awarded"] == 40
    assert ledger["failures"] == {"redeem:insufficient_points": 1}
    assert response.json()["scheduler"]["totals"] == {"runs": 0, "success": 0, "failures": 0, "retries": 0}


@pytest.mark.asyncio
async def test_ledger_snapshot_requires_staff_key(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "staff_api_key", "till-secret")

    async with _client(app) as client:
        denied = await client.get("/api/v1/observability/ledger")
        allowed = await client.get("/api/v1/observability/ledger", headers={"X-API-Key": "till-secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_prometheus_metrics(app_with_db) -> None:
    app, _ = app_with_db
    store = get_ledger_store()
    store.record_award(25)
    store.record_sweep(10)
    store.record_failure("redeem", "reward_out_of_stock")

    async with _client(app) as client:
        response = await client.get("/api/v1/observability/prometheus")

    assert response.status_code == 200
    body = response.text
    assert 'cafe_loyalty_ledger_operations_total{operation="awards"} 1' in body
    assert 'cafe_loyalty_ledger_points_total{bucket="expired"} 10' in body
    assert 'cafe_loyalty_ledger_failures_total{code="reward_out_of_stock",operation="redeem"} 1' in body
    assert "cafe_loyalty_scheduler_runs_total 0" in body
