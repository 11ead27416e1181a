"""Expiration sweeper: deduct expired ledger entries from cached balances exactly once."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.models.loyalty import LoyaltyCard, PointsLedgerEntry
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.observability.tracing import ledger_span

from .errors import CardNotFound, LedgerError, StorageFailure
from .events import POINTS_EXPIRED, LedgerEvent, LedgerEventBus, get_ledger_event_bus
from .pagination import utcnow


def expired_unswept_clause(now: datetime):
    return (
        PointsLedgerEntry.deducted.is_(False),
        PointsLedgerEntry.expires_at.is_not(None),
        PointsLedgerEntry.expires_at <= now,
    )


@dataclass
class SweepReport:
    """Outcome of sweeping every card with expired entries."""

    cards_swept: int = 0
    points_expired: int = 0
    failed_cards: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "cards_swept": self.cards_swept,
            "points_expired": self.points_expired,
            "failures": len(self.failed_cards),
        }


class ExpirationSweeper:
    def __init__(self, db_session: AsyncSession, *, event_bus: LedgerEventBus | None = None) -> None:
        self._db = db_session
        self._events = event_bus or get_ledger_event_bus()
        self._metrics = get_ledger_store()

    async def sweep(self, card_id: UUID, *, now: datetime | None = None) -> int:
        """Deduct every expired, not yet deducted entry of a card and return the points removed.

        Entries are claimed by a single conditional update, so two concurrent sweeps never
        deduct the same entry. The balance decrement is floored at zero, and the return value
        is what the balance actually lost, not the face value of the claimed entries.
        """

        reference_time = utcnow(now)
        with ledger_span("ledger.sweep", card_id=card_id):
            try:
                expired, absorbed = await self._sweep(card_id, reference_time)
            except LedgerError as exc:
                self._metrics.record_failure("sweep", exc.code)
                raise

        self._metrics.record_sweep(expired, absorbed=absorbed)
        if expired:
            await self._events.publish(
                LedgerEvent(
                    kind=POINTS_EXPIRED,
                    card_id=card_id,
                    points=expired,
                    payload={"swept_at": reference_time.isoformat(), "absorbed": absorbed},
                )
            )
        return expired

    async def _sweep(self, card_id: UUID, now: datetime) -> tuple[int, int]:
        deducted = absorbed = 0
        try:
            exists = await self._db.scalar(select(LoyaltyCard.id).where(LoyaltyCard.id == card_id))
            if exists is None:
                await self._db.rollback()
                raise CardNotFound(card_id)

            claimed = await self._db.execute(
                update(PointsLedgerEntry)
                .where(PointsLedgerEntry.card_id == card_id, *expired_unswept_clause(now))
                .values(deducted=True, deducted_at=now, deducted_amount=PointsLedgerEntry.amount)
                .returning(PointsLedgerEntry.id, PointsLedgerEntry.amount, PointsLedgerEntry.expires_at)
                .execution_options(synchronize_session=False)
            )
            rows = claimed.all()
            total = sum(row.amount for row in rows)
            if total > 0:
                # Locked after the claim so redemptions cannot move the balance before the decrement.
                balance = await self._db.scalar(
                    select(LoyaltyCard.points_balance).where(LoyaltyCard.id == card_id).with_for_update()
                )
                deducted = min(int(balance or 0), total)
                absorbed = total - deducted
                await self._db.execute(
                    update(LoyaltyCard)
                    .where(LoyaltyCard.id == card_id)
                    .values(points_balance=LoyaltyCard.points_balance - deducted, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if absorbed:
                    await self._record_absorbed(rows, absorbed)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Expiration sweep failed", card_id=str(card_id))
            raise StorageFailure("Unable to sweep expired points") from exc

        if deducted or absorbed:
            logger.info("Deducted expired points", card_id=str(card_id), points=deducted, absorbed=absorbed)
        return deducted, absorbed

    async def _record_absorbed(self, rows, absorbed: int) -> None:
        """Attribute points already spent to the earliest-expiring claimed entries."""

        remaining = absorbed
        for row in sorted(rows, key=lambda item: (item.expires_at, str(item.id))):
            if remaining <= 0:
                break
            share = min(row.amount, remaining)
            remaining -= share
            await self._db.execute(
                update(PointsLedgerEntry)
                .where(PointsLedgerEntry.id == row.id)
                .values(deducted_amount=row.amount - share)
                .execution_options(synchronize_session=False)
            )

    async def list_cards_due(self, *, now: datetime | None = None, limit: int = 200) -> list[UUID]:
        """Return ids of cards holding expired entries that have not been deducted yet."""

        reference_time = utcnow(now)
        stmt = (
            select(PointsLedgerEntry.card_id)
            .where(*expired_unswept_clause(reference_time))
            .group_by(PointsLedgerEntry.card_id)
            .order_by(PointsLedgerEntry.card_id)
            .limit(max(1, limit))
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def sweep_due_cards(self, *, now: datetime | None = None, limit: int = 200) -> SweepReport:
        """Sweep each due card in its own transaction; one card failing does not stop the batch."""

        reference_time = utcnow(now)
        report = SweepReport()
        for card_id in await self.list_cards_due(now=reference_time, limit=limit):
            try:
                expired = await self.sweep(card_id, now=reference_time)
            except LedgerError as exc:
                logger.warning("Skipping card after sweep failure", card_id=str(card_id), error=exc.code)
                report.failed_cards.append(str(card_id))
                continue
            report.cards_swept += 1
            report.points_expired += expired
        return report


__all__ = ["ExpirationSweeper", "SweepReport", "expired_unswept_clause"]
