"""Redemption engine: spend a freshly swept balance on a reward."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cafe_loyalty_api.models.loyalty import (
    LoyaltyCard,
    LoyaltyCardStatus,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyReward,
)
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.observability.tracing import ledger_span

from .cards import MAX_PAGE_SIZE, load_card
from .errors import (
    CardInactive,
    CardNotFound,
    ClientReferenceConflict,
    ConcurrencyConflict,
    InsufficientPoints,
    LedgerError,
    RewardInactive,
    RewardNotFound,
    RewardOutOfStock,
    StorageFailure,
)
from .events import REWARD_REDEEMED, LedgerEvent, LedgerEventBus, get_ledger_event_bus
from .expiration import ExpirationSweeper
from .pagination import utcnow
from .policy import LedgerPolicy


class RedemptionEngine:
    """Authorises and records reward redemptions against a card."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        policy: LedgerPolicy | None = None,
        event_bus: LedgerEventBus | None = None,
    ) -> None:
        self._db = db_session
        self._policy = policy or LedgerPolicy.from_settings()
        self._events = event_bus or get_ledger_event_bus()
        self._sweeper = ExpirationSweeper(db_session, event_bus=self._events)
        self._metrics = get_ledger_store()

    async def redeem(
        self,
        card_id: UUID,
        reward_id: UUID,
        *,
        client_reference: str | None = None,
        now: datetime | None = None,
    ) -> LoyaltyRedemption:
        """Redeem a reward, debiting points and stock in one transaction.

        Expired points are swept first so the balance check never counts them. A repeated
        `client_reference` returns the redemption recorded by the first attempt.
        """

        reference_time = utcnow(now)
        reference = (client_reference or "").strip() or None
        with ledger_span("ledger.redeem", card_id=card_id, reward_id=reward_id, client_reference=reference):
            try:
                redemption, created = await self._redeem_with_retry(card_id, reward_id, reference, reference_time)
            except LedgerError as exc:
                self._metrics.record_failure("redeem", exc.code)
                raise

        self._metrics.record_redemption(redemption.points_used, replayed=not created)
        if created:
            await self._events.publish(
                LedgerEvent(
                    kind=REWARD_REDEEMED,
                    card_id=card_id,
                    points=redemption.points_used,
                    payload={"redemption_id": str(redemption.id), "reward_id": str(reward_id)},
                )
            )
        return redemption

    async def _redeem_with_retry(
        self,
        card_id: UUID,
        reward_id: UUID,
        client_reference: str | None,
        now: datetime,
    ) -> tuple[LoyaltyRedemption, bool]:
        retries = 0
        while True:
            try:
                return await self._attempt(card_id, reward_id, client_reference, now)
            except ConcurrencyConflict:
                if retries >= self._policy.conflict_retries:
                    raise
                retries += 1
                self._metrics.record_conflict_retry()
                logger.warning(
                    "Retrying redemption after concurrent balance change",
                    card_id=str(card_id),
                    reward_id=str(reward_id),
                    attempt=retries,
                )

    async def _attempt(
        self,
        card_id: UUID,
        reward_id: UUID,
        client_reference: str | None,
        now: datetime,
    ) -> tuple[LoyaltyRedemption, bool]:
        if client_reference:
            existing = await self._find_by_reference(card_id, client_reference)
            if existing is not None:
                self._ensure_same_reward(existing, reward_id, client_reference)
                logger.info(
                    "Returning previously recorded redemption",
                    card_id=str(card_id),
                    redemption_id=str(existing.id),
                )
                return existing, False

        card = await load_card(self._db, card_id)
        if not card.is_active:
            raise CardInactive(card_id)

        await self._sweeper.sweep(card_id, now=now)

        reward = await self._db.get(LoyaltyReward, reward_id, populate_existing=True)
        if reward is None:
            raise RewardNotFound(reward_id)
        if not reward.is_active:
            raise RewardInactive(reward_id)

        card = await load_card(self._db, card_id)
        if not card.is_active:
            raise CardInactive(card_id)
        required = int(reward.points_required)
        balance = int(card.points_balance or 0)
        if balance < required:
            logger.info(
                "Rejected redemption for insufficient points",
                card_id=str(card_id),
                balance=balance,
                required=required,
            )
            raise InsufficientPoints(balance, required)
        if reward.stock_tracked and (reward.quantity or 0) <= 0:
            raise RewardOutOfStock(reward_id)

        try:
            debited = await self._db.execute(
                update(LoyaltyCard)
                .where(
                    LoyaltyCard.id == card_id,
                    LoyaltyCard.status == LoyaltyCardStatus.ACTIVE,
                    LoyaltyCard.points_balance >= required,
                )
                .values(points_balance=LoyaltyCard.points_balance - required, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if debited.rowcount == 0:
                await self._db.rollback()
                raise await self._explain_debit_failure(card_id, required)

            if reward.stock_tracked:
                taken = await self._db.execute(
                    update(LoyaltyReward)
                    .where(
                        LoyaltyReward.id == reward_id,
                        LoyaltyReward.is_active.is_(True),
                        LoyaltyReward.stock_tracked.is_(True),
                        LoyaltyReward.quantity > 0,
                    )
                    .values(quantity=LoyaltyReward.quantity - 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if taken.rowcount == 0:
                    await self._db.rollback()
                    raise await self._explain_stock_failure(reward_id)

            redemption = LoyaltyRedemption(
                card_id=card_id,
                reward_id=reward_id,
                points_used=required,
                status=LoyaltyRedemptionStatus.COMPLETED,
                read=False,
                client_reference=client_reference,
                created_at=now,
            )
            self._db.add(redemption)
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            if client_reference:
                existing = await self._find_by_reference(card_id, client_reference)
                if existing is not None:
                    self._ensure_same_reward(existing, reward_id, client_reference)
                    logger.warning(
                        "Detected race on redemption client reference",
                        card_id=str(card_id),
                        client_reference=client_reference,
                    )
                    return existing, False
            logger.exception("Redemption violated a ledger constraint", card_id=str(card_id))
            raise StorageFailure("Unable to record redemption") from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Failed to record redemption", card_id=str(card_id), reward_id=str(reward_id))
            raise StorageFailure("Unable to record redemption") from exc

        logger.info(
            "Recorded reward redemption",
            card_id=str(card_id),
            reward_id=str(reward_id),
            redemption_id=str(redemption.id),
            points=required,
        )
        return redemption, True

    @staticmethod
    def _ensure_same_reward(existing: LoyaltyRedemption, reward_id: UUID, client_reference: str) -> None:
        if existing.reward_id != reward_id:
            raise ClientReferenceConflict(client_reference, existing.reward_id)

    async def _explain_debit_failure(self, card_id: UUID, required: int) -> LedgerError:
        card = await self._db.get(LoyaltyCard, card_id, populate_existing=True)
        if card is None:
            return CardNotFound(card_id)
        if not card.is_active:
            return CardInactive(card_id)
        balance = int(card.points_balance or 0)
        if balance < required:
            return InsufficientPoints(balance, required)
        return ConcurrencyConflict(f"Balance of card {card_id} changed during redemption")

    async def _explain_stock_failure(self, reward_id: UUID) -> LedgerError:
        reward = await self._db.get(LoyaltyReward, reward_id, populate_existing=True)
        if reward is None:
            return RewardNotFound(reward_id)
        if not reward.is_active:
            return RewardInactive(reward_id)
        return RewardOutOfStock(reward_id)

    async def _find_by_reference(self, card_id: UUID, client_reference: str) -> LoyaltyRedemption | None:
        result = await self._db.execute(
            select(LoyaltyRedemption).where(
                LoyaltyRedemption.card_id == card_id,
                LoyaltyRedemption.client_reference == client_reference,
            )
        )
        return result.scalar_one_or_none()

    async def get_redemption(self, redemption_id: UUID, *, card_id: UUID | None = None) -> LoyaltyRedemption | None:
        stmt = (
            select(LoyaltyRedemption)
            .options(selectinload(LoyaltyRedemption.reward))
            .where(LoyaltyRedemption.id == redemption_id)
        )
        if card_id is not None:
            stmt = stmt.where(LoyaltyRedemption.card_id == card_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_redemptions(
        self,
        card_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        unread_only: bool = False,
    ) -> tuple[list[LoyaltyRedemption], Tuple[datetime, UUID] | None]:
        """Return a newest-first window of a card's redemption history."""

        await load_card(self._db, card_id)
        bounded_limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = (
            select(LoyaltyRedemption)
            .options(selectinload(LoyaltyRedemption.reward))
            .where(LoyaltyRedemption.card_id == card_id)
            .order_by(LoyaltyRedemption.created_at.desc(), LoyaltyRedemption.id.desc())
        )
        if unread_only:
            stmt = stmt.where(LoyaltyRedemption.read.is_(False))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    LoyaltyRedemption.created_at < cursor_time,
                    and_(
                        LoyaltyRedemption.created_at == cursor_time,
                        LoyaltyRedemption.id < cursor_id,
                    ),
                )
            )

        result = await self._db.execute(stmt.limit(bounded_limit + 1))
        rows = list(result.scalars().all())
        redemptions = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit and redemptions:
            tail = redemptions[-1]
            next_cursor = (tail.created_at, tail.id)
        return redemptions, next_cursor

    async def mark_read(self, card_id: UUID, redemption_ids: Iterable[UUID] | None = None) -> int:
        """Flag unread redemptions as seen; all of the card's when no ids are given."""

        await load_card(self._db, card_id)
        stmt = update(LoyaltyRedemption).where(
            LoyaltyRedemption.card_id == card_id,
            LoyaltyRedemption.read.is_(False),
        )
        if redemption_ids is not None:
            ids = list(redemption_ids)
            if not ids:
                return 0
            stmt = stmt.where(LoyaltyRedemption.id.in_(ids))
        try:
            result = await self._db.execute(
                stmt.values(read=True).execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageFailure("Unable to mark redemptions as read") from exc
        return int(result.rowcount or 0)


__all__ = ["RedemptionEngine"]
