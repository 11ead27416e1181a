from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from cafe_loyalty_api.models.loyalty import LoyaltyCard, LoyaltyRedemption, PointsLedgerEntry
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.services.ledger import (
    AwardLineItem,
    AwardPipeline,
    BalanceSummarizer,
    ExpirationSweeper,
    InsufficientPoints,
    RedemptionEngine,
)
from cafe_loyalty_api.services.ledger.events import POINTS_EXPIRED


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_unused_points_expire_after_window(session_factory, make_card, make_reward, policy) -> None:
    card = await make_card(session_factory)
    reward = await make_reward(session_factory, points_required=100)

    async with session_factory() as session:
        entry = await AwardPipeline(session, policy=policy).record_award(
            card.id,
            [AwardLineItem(point_value=250, quantity=2)],
            now=NOW,
        )
        assert entry.amount == 500

    later = NOW + timedelta(days=16)
    async with session_factory() as session:
        expired = await ExpirationSweeper(session).sweep(card.id, now=later)
        stored = await session.get(LoyaltyCard, card.id)
        assert expired == 500
        assert stored.points_balance == 0

    async with session_factory() as session:
        with pytest.raises(InsufficientPoints) as excinfo:
            await RedemptionEngine(session, policy=policy).redeem(card.id, reward.id, now=later)

    assert excinfo.value.balance == 0
    assert excinfo.value.shortfall == 100


@pytest.mark.asyncio
async def test_expiration_after_spending_reconciles_without_drift(
    session_factory, make_card, make_reward, policy, event_bus
) -> None:
    card = await make_card(session_factory)
    reward = await make_reward(session_factory, points_required=100)
    events = []
    event_bus.subscribe(events.append)

    async with session_factory() as session:
        await AwardPipeline(session, policy=policy).record_award(
            card.id, [AwardLineItem(point_value=500)], now=NOW
        )
        await RedemptionEngine(session, policy=policy).redeem(card.id, reward.id, now=NOW + timedelta(days=1))

    later = NOW + timedelta(days=16)
    async with session_factory() as session:
        expired = await ExpirationSweeper(session, event_bus=event_bus).sweep(card.id, now=later)
        stored = await session.get(LoyaltyCard, card.id)
        assert expired == 400
        assert stored.points_balance == 0

    async with session_factory() as session:
        entry = (
            await session.execute(select(PointsLedgerEntry).where(PointsLedgerEntry.card_id == card.id))
        ).scalar_one()
        report = await BalanceSummarizer(session, policy=policy).recompute_balance(card.id, now=later)

    assert (entry.amount, entry.deducted_amount) == (500, 400)
    assert report.redeemed_points == 100
    assert report.expiration_absorbed == 100
    assert report.drift == 0
    assert report.is_consistent

    expirations = [event for event in events if event.kind == POINTS_EXPIRED]
    assert [(event.points, event.payload["absorbed"]) for event in expirations] == [(400, 100)]
    snapshot = get_ledger_store().snapshot()
    assert snapshot.points["expired"] == 400
    assert snapshot.points["expiration_absorbed"] == 100


@pytest.mark.asyncio
async def test_points_are_conserved_across_a_busy_week(session_factory, make_card, make_reward, policy) -> None:
    card = await make_card(session_factory)
    espresso = await make_reward(session_factory, name="Espresso", points_required=30)
    pastry = await make_reward(session_factory, name="Pastry", points_required=45, quantity=2)

    async with session_factory() as session:
        pipeline = AwardPipeline(session, policy=policy)
        engine = RedemptionEngine(session, policy=policy)
        await pipeline.record_award(card.id, [AwardLineItem(point_value=20, quantity=3)], now=NOW - timedelta(days=20))
        await pipeline.record_award(card.id, [AwardLineItem(point_value=15)], expiration_offset_days=2, now=NOW)
        await pipeline.record_award(card.id, [AwardLineItem(point_value=40, quantity=2)], now=NOW + timedelta(days=1))
        await engine.redeem(card.id, espresso.id, now=NOW + timedelta(days=1))
        await pipeline.record_award(card.id, [AwardLineItem(point_value=10)], now=NOW + timedelta(days=4))
        await engine.redeem(card.id, pastry.id, now=NOW + timedelta(days=4))

    async with session_factory() as session:
        awarded = await session.scalar(
            select(func.coalesce(func.sum(PointsLedgerEntry.amount), 0)).where(PointsLedgerEntry.card_id == card.id)
        )
        expired = await session.scalar(
            select(func.coalesce(func.sum(PointsLedgerEntry.amount), 0)).where(
                PointsLedgerEntry.card_id == card.id,
                PointsLedgerEntry.deducted.is_(True),
            )
        )
        redeemed = await session.scalar(
            select(func.coalesce(func.sum(LoyaltyRedemption.points_used), 0)).where(
                LoyaltyRedemption.card_id == card.id
            )
        )
        stored = await session.get(LoyaltyCard, card.id)
        reconciliation = await BalanceSummarizer(session, policy=policy).recompute_balance(
            card.id, now=NOW + timedelta(days=4)
        )

    assert (awarded, expired, redeemed) == (165, 75, 75)
    assert stored.points_balance == awarded - expired - redeemed == 15
    assert reconciliation.is_consistent
