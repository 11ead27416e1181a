from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from cafe_loyalty_api.models.loyalty import LoyaltyCard, PointsLedgerEntry
from cafe_loyalty_api.services.ledger import (
    AwardLineItem,
    AwardPipeline,
    BalanceSummarizer,
    CardNotFound,
    ExpirationSweeper,
    LedgerPolicy,
    RedemptionEngine,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _seed_ledger(factory, policy, card_id) -> None:
    async with factory() as session:
        pipeline = AwardPipeline(session, policy=policy)
        # expired five days ago, not yet swept
        await pipeline.record_award(card_id, [AwardLineItem(point_value=5)], 15, now=NOW - timedelta(days=20))
        await pipeline.record_award(card_id, [AwardLineItem(point_value=10)], 3, now=NOW)
        await pipeline.record_award(card_id, [AwardLineItem(point_value=20)], 10, now=NOW)
        await pipeline.record_award(card_id, [AwardLineItem(point_value=4)], 7, now=NOW)


@pytest.mark.asyncio
async def test_summarize_reports_live_expiring_and_expired(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)
    await _seed_ledger(session_factory, policy, card.id)

    async with session_factory() as session:
        summary = await BalanceSummarizer(session, policy=policy).summarize(card.id, now=NOW)

    assert summary.total_live == 34
    assert summary.expired_unswept == 5
    # the entry expiring exactly at the end of the window counts as expiring soon
    assert summary.expiring_soon == 14
    assert summary.safe_balance == 20
    assert summary.next_expiration_at == NOW + timedelta(days=3)
    assert summary.points_balance == 39
    assert summary.lookahead_days == 7


@pytest.mark.asyncio
async def test_summarize_respects_custom_lookahead(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)
    await _seed_ledger(session_factory, policy, card.id)

    async with session_factory() as session:
        summarizer = BalanceSummarizer(session, policy=policy)
        narrow = await summarizer.summarize(card.id, 1, now=NOW)
        wide = await summarizer.summarize(card.id, 30, now=NOW)

    assert narrow.expiring_soon == 0
    assert narrow.safe_balance == 34
    assert wide.expiring_soon == 34
    assert wide.safe_balance == 0


@pytest.mark.asyncio
async def test_summarize_defaults_lookahead_from_policy(session_factory, make_card) -> None:
    card = await make_card(session_factory)
    policy = LedgerPolicy(expiration_days=15, expiring_soon_days=3)
    await _seed_ledger(session_factory, policy, card.id)

    async with session_factory() as session:
        summary = await BalanceSummarizer(session, policy=policy).summarize(card.id, now=NOW)

    assert summary.lookahead_days == 3
    assert summary.expiring_soon == 10


@pytest.mark.asyncio
async def test_summarize_is_read_only(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)
    await _seed_ledger(session_factory, policy, card.id)

    async with session_factory() as session:
        await BalanceSummarizer(session, policy=policy).summarize(card.id, now=NOW + timedelta(days=60))

    async with session_factory() as session:
        stored_card = await session.get(LoyaltyCard, card.id)
        deducted = (
            await session.execute(select(PointsLedgerEntry).where(PointsLedgerEntry.deducted.is_(True)))
        ).scalars().all()

    assert stored_card.points_balance == 39
    assert deducted == []


@pytest.mark.asyncio
async def test_summarize_empty_ledger(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)

    async with session_factory() as session:
        summary = await BalanceSummarizer(session, policy=policy).summarize(card.id, now=NOW)

    assert (summary.total_live, summary.expired_unswept, summary.expiring_soon, summary.safe_balance) == (0, 0, 0, 0)
    assert summary.next_expiration_at is None


@pytest.mark.asyncio
async def test_summarize_unknown_card(session_factory, policy) -> None:
    async with session_factory() as session:
        with pytest.raises(CardNotFound):
            await BalanceSummarizer(session, policy=policy).summarize(uuid4(), now=NOW)


@pytest.mark.asyncio
async def test_negative_lookahead_is_rejected(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await BalanceSummarizer(session, policy=policy).summarize(card.id, -1, now=NOW)


@pytest.mark.asyncio
async def test_oversized_lookahead_is_rejected(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)
    assert policy.lookahead_window(365).days == 365
    with pytest.raises(ValueError):
        policy.lookahead_window(366)
    with pytest.raises(ValueError):
        policy.expiration_window(10**9)

    async with session_factory() as session:
        with pytest.raises(ValueError):
            await BalanceSummarizer(session, policy=policy).summarize(card.id, 10**9, now=NOW)


@pytest.mark.asyncio
async def test_recompute_balance_matches_cached_balance(session_factory, make_card, make_reward, policy) -> None:
    card = await make_card(session_factory)
    reward = await make_reward(session_factory, points_required=12)
    await _seed_ledger(session_factory, policy, card.id)

    async with session_factory() as session:
        summarizer = BalanceSummarizer(session, policy=policy)
        before_sweep = await summarizer.recompute_balance(card.id, now=NOW)

        await RedemptionEngine(session, policy=policy).redeem(card.id, reward.id, now=NOW)
        after_redeem = await summarizer.recompute_balance(card.id, now=NOW)

    assert before_sweep.expired_unswept == 5
    assert before_sweep.is_consistent

    assert after_redeem.expired_unswept == 0
    assert after_redeem.redeemed_points == 12
    assert after_redeem.cached_balance == after_redeem.ledger_balance == 34 - 12
    assert after_redeem.is_consistent


@pytest.mark.asyncio
async def test_recompute_balance_flags_drift(session_factory, make_card, policy) -> None:
    card = await make_card(session_factory)
    await _seed_ledger(session_factory, policy, card.id)
    async with session_factory() as session:
        await ExpirationSweeper(session).sweep(card.id, now=NOW)
        stored = await session.get(LoyaltyCard, card.id)
        stored.points_balance = stored.points_balance + 7
        await session.commit()

    async with session_factory() as session:
        report = await BalanceSummarizer(session, policy=policy).recompute_balance(card.id, now=NOW)

    assert report.drift == 7
    assert not report.is_consistent
    assert report.as_dict()["is_consistent"] is False
