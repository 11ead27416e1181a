"""Award pipeline: turn a completed purchase into an expiring ledger entry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.models.loyalty import LoyaltyCard, LoyaltyCardStatus, PointsLedgerEntry
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.observability.tracing import ledger_span

from .cards import load_card
from .errors import CardInactive, LedgerError, StorageFailure
from .events import POINTS_AWARDED, LedgerEvent, LedgerEventBus, get_ledger_event_bus
from .pagination import utcnow
from .policy import LedgerPolicy


@dataclass(frozen=True, slots=True)
class AwardLineItem:
    """One purchased product line and the points each unit earns."""

    point_value: int
    quantity: int = 1


def compute_award_points(line_items: Iterable[AwardLineItem]) -> int:
    total = 0
    for item in line_items:
        if item.point_value < 0 or item.quantity < 0:
            raise ValueError("Line item point values and quantities must not be negative")
        total += item.point_value * item.quantity
    return total


class AwardPipeline:
    """Records points earned by purchases against a card."""

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
        self._metrics = get_ledger_store()

    async def record_award(
        self,
        card_id: UUID,
        line_items: Iterable[AwardLineItem],
        expiration_offset_days: int | None = None,
        *,
        reference: str | None = None,
        now: datetime | None = None,
    ) -> PointsLedgerEntry | None:
        """Credit the card with the purchase total; zero-point purchases record nothing."""

        reference_time = utcnow(now)
        with ledger_span("ledger.award", card_id=card_id, reference=reference):
            try:
                entry = await self._record(card_id, list(line_items), expiration_offset_days, reference, reference_time)
            except LedgerError as exc:
                self._metrics.record_failure("award", exc.code)
                raise

        if entry is None:
            return None

        self._metrics.record_award(entry.amount)
        await self._events.publish(
            LedgerEvent(
                kind=POINTS_AWARDED,
                card_id=card_id,
                points=entry.amount,
                payload={"entry_id": str(entry.id), "expires_at": entry.expires_at.isoformat()},
            )
        )
        return entry

    async def _record(
        self,
        card_id: UUID,
        line_items: list[AwardLineItem],
        expiration_offset_days: int | None,
        reference: str | None,
        now: datetime,
    ) -> PointsLedgerEntry | None:
        card = await load_card(self._db, card_id)
        if not card.is_active:
            logger.warning("Rejected award for inactive card", card_id=str(card_id))
            raise CardInactive(card_id)

        total = compute_award_points(line_items)
        if total <= 0:
            self._metrics.record_zero_award()
            logger.info("Skipped zero-point award", card_id=str(card_id), reference=reference)
            return None

        expires_at = now + self._policy.expiration_window(expiration_offset_days)
        try:
            credited = await self._db.execute(
                update(LoyaltyCard)
                .where(LoyaltyCard.id == card_id, LoyaltyCard.status == LoyaltyCardStatus.ACTIVE)
                .values(points_balance=LoyaltyCard.points_balance + total, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if credited.rowcount == 0:
                await self._db.rollback()
                raise CardInactive(card_id)

            entry = PointsLedgerEntry(
                card_id=card_id,
                amount=total,
                expires_at=expires_at,
                deducted=False,
                reference=reference,
                created_at=now,
            )
            self._db.add(entry)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Failed to record points award", card_id=str(card_id), points=total)
            raise StorageFailure("Unable to record points award") from exc

        logger.info(
            "Recorded points award",
            card_id=str(card_id),
            points=total,
            expires_at=expires_at.isoformat(),
            reference=reference,
        )
        return entry


__all__ = ["AwardLineItem", "AwardPipeline", "compute_award_points"]
