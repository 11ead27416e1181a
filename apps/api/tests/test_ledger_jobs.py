from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import select

from cafe_loyalty_api.jobs.ledger import sweep_expired_points
from cafe_loyalty_api.models.loyalty import LoyaltyCard
from cafe_loyalty_api.observability.scheduler import get_scheduler_store
from cafe_loyalty_api.scheduling.config import JobDefinition, RetryPolicy, load_job_definitions, parse_schedule
from cafe_loyalty_api.scheduling.runner import LedgerJobScheduler, resolve_task
from cafe_loyalty_api.services.ledger import AwardLineItem, AwardPipeline


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SCHEDULE_PATH = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


@pytest.mark.asyncio
async def test_sweep_job_deducts_expired_points_across_cards(session_factory, make_card, policy) -> None:
    stale = await make_card(session_factory, uid="CARD-STALE")
    mixed = await make_card(session_factory, uid="CARD-MIXED")
    fresh = await make_card(session_factory, uid="CARD-FRESH")

    async with session_factory() as session:
        pipeline = AwardPipeline(session, policy=policy)
        await pipeline.record_award(stale.id, [AwardLineItem(point_value=70)], now=NOW - timedelta(days=30))
        await pipeline.record_award(mixed.id, [AwardLineItem(point_value=20)], now=NOW - timedelta(days=16))
        await pipeline.record_award(mixed.id, [AwardLineItem(point_value=35)], now=NOW)
        await pipeline.record_award(fresh.id, [AwardLineItem(point_value=50)], now=NOW)

    summary = await sweep_expired_points(session_factory=session_factory, now=NOW)

    assert summary == {"cards_swept": 2, "points_expired": 90, "failures": 0}
    async with session_factory() as session:
        balances = dict((await session.execute(select(LoyaltyCard.uid, LoyaltyCard.points_balance))).all())
    assert balances == {"CARD-STALE": 0, "CARD-MIXED": 35, "CARD-FRESH": 50}

    rerun = await sweep_expired_points(session_factory=session_factory, now=NOW)
    assert rerun == {"cards_swept": 0, "points_expired": 0, "failures": 0}


@pytest.mark.asyncio
async def test_sweep_job_honours_batch_size(session_factory, make_card, policy) -> None:
    for index in range(3):
        card = await make_card(session_factory, uid=f"CARD-{index}")
        async with session_factory() as session:
            await AwardPipeline(session, policy=policy).record_award(
                card.id, [AwardLineItem(point_value=10)], now=NOW - timedelta(days=20)
            )

    first = await sweep_expired_points(session_factory=session_factory, batch_size=2, now=NOW)
    second = await sweep_expired_points(session_factory=session_factory, batch_size=2, now=NOW)

    assert first["cards_swept"] == 2
    assert second["cards_swept"] == 1


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_scheduler_store()
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    scheduler = LedgerJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml", sleep=fake_sleep)

    attempts = 0

    async def flaky_job(*, session_factory, batch_size) -> dict[str, int]:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise RuntimeError("database is locked")
        return {"cards_swept": batch_size}

    job = JobDefinition(
        id="expiration_sweep",
        task="tests.flaky",
        cron="*/15 * * * *",
        kwargs={"batch_size": 5},
        retry=RetryPolicy(max_attempts=3, base_backoff_seconds=2.0, backoff_multiplier=3.0, jitter_seconds=0.0),
    )

    result = await scheduler.build_runner(job, flaky_job)()

    assert result == {"cards_swept": 5}
    assert attempts == 3
    assert delays == [2.0, 6.0]
    snapshot = store.snapshot()
    assert snapshot.totals == {"runs": 1, "success": 1, "failures": 0, "retries": 2}
    job_snapshot = snapshot.jobs["expiration_sweep"]
    assert job_snapshot["last_attempts"] == 3
    assert job_snapshot["last_error"] is None
    assert job_snapshot["last_result"] == {"cards_swept": 5}
    assert job_snapshot["totals"]["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()

    async def fake_sleep(delay: float) -> None:
        return None

    scheduler = LedgerJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml", sleep=fake_sleep)

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = JobDefinition(
        id="expiration_sweep",
        task="tests.failing",
        cron="*/15 * * * *",
        retry=RetryPolicy(max_attempts=2, jitter_seconds=0.0),
    )

    runner = scheduler.build_runner(job, failing_job)
    assert await runner() is None
    assert await runner() is None

    snapshot = store.snapshot()
    assert snapshot.totals["failures"] == 2
    assert snapshot.totals["retries"] == 2
    job_snapshot = snapshot.jobs["expiration_sweep"]
    assert job_snapshot["last_error"] == "boom"
    assert job_snapshot["totals"]["consecutive_failures"] == 2
    assert job_snapshot["last_error_at"] is not None


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(base_backoff_seconds=5, backoff_multiplier=2, max_backoff_seconds=12)

    assert [policy.delay_for(attempt) for attempt in range(1, 5)] == [5, 10, 12, 12]


def test_parse_schedule_rejects_malformed_jobs() -> None:
    with pytest.raises(ValueError):
        parse_schedule({"jobs": {"sweep": {"task": "cafe_loyalty_api.jobs.ledger.sweep_expired_points"}}})
    with pytest.raises(ValueError):
        parse_schedule({"jobs": {"sweep": {"task": "x.y", "cron": "* * * * *", "kwargs": [1]}}})

    config = parse_schedule({"jobs": {"sweep": {"task": "x.y", "cron": "0 * * * *", "max_attempts": 0}}})
    assert config.timezone == "UTC"
    assert config.jobs[0].id == "sweep"
    assert config.jobs[0].retry.max_attempts == 1


def test_shipped_schedule_registers_expiration_sweep() -> None:
    config = load_job_definitions(SCHEDULE_PATH)

    jobs = {job.id: job for job in config.jobs}
    sweep = jobs["expiration_sweep"]
    assert sweep.kwargs == {"batch_size": 200}
    assert sweep.retry.max_attempts == 3
    assert resolve_task(sweep.task) is sweep_expired_points


def test_missing_schedule_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "absent.toml")


def test_resolve_task_rejects_sync_callables() -> None:
    with pytest.raises(TypeError):
        resolve_task("cafe_loyalty_api.scheduling.config.parse_schedule")
    with pytest.raises(ValueError):
        resolve_task("parse_schedule")
