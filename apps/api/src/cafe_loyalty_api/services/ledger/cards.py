"""Card directory: issuing cards, resolving scans and browsing the ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.models.loyalty import LoyaltyCard, LoyaltyCardStatus, PointsLedgerEntry

from .errors import CardAlreadyExists, CardNotFound, StorageFailure

MAX_PAGE_SIZE = 100


def normalize_uid(uid: str) -> str:
    cleaned = (uid or "").strip()
    if not cleaned:
        raise ValueError("Card uid must not be empty")
    return cleaned


async def load_card(session: AsyncSession, card_id: UUID) -> LoyaltyCard:
    """Fetch a card with fresh column values, raising CardNotFound when missing."""

    card = await session.get(LoyaltyCard, card_id, populate_existing=True)
    if card is None:
        raise CardNotFound(card_id)
    return card


class CardDirectory:
    """Looks up and administers loyalty cards."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_card(self, card_id: UUID) -> LoyaltyCard:
        return await load_card(self._db, card_id)

    async def resolve_uid(self, uid: str) -> LoyaltyCard:
        """Map a scanned card uid to its account."""

        cleaned = normalize_uid(uid)
        result = await self._db.execute(select(LoyaltyCard).where(LoyaltyCard.uid == cleaned))
        card = result.scalar_one_or_none()
        if card is None:
            logger.info("Scanned card uid is not registered", uid=cleaned)
            raise CardNotFound(cleaned)
        return card

    async def issue_card(self, uid: str, *, holder_name: str | None = None) -> LoyaltyCard:
        cleaned = normalize_uid(uid)
        card = LoyaltyCard(
            uid=cleaned,
            holder_name=(holder_name or "").strip() or None,
            points_balance=0,
            status=LoyaltyCardStatus.ACTIVE,
        )
        self._db.add(card)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            logger.warning("Rejected duplicate card uid", uid=cleaned)
            raise CardAlreadyExists(cleaned) from exc
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Failed to issue loyalty card", uid=cleaned)
            raise StorageFailure("Unable to issue loyalty card") from exc

        logger.info("Issued loyalty card", card_id=str(card.id), uid=cleaned)
        return card

    async def set_status(self, card_id: UUID, status: LoyaltyCardStatus) -> LoyaltyCard:
        card = await load_card(self._db, card_id)
        if card.status == status:
            return card

        previous = card.status
        card.status = status
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageFailure("Unable to update card status") from exc

        logger.info(
            "Updated loyalty card status",
            card_id=str(card_id),
            previous=previous.value,
            status=status.value,
        )
        return card

    async def list_ledger_entries(
        self,
        card_id: UUID,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
    ) -> tuple[list[PointsLedgerEntry], Tuple[datetime, UUID] | None]:
        """Return a newest-first window of ledger entries for a card."""

        await load_card(self._db, card_id)
        bounded_limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = (
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.card_id == card_id)
            .order_by(PointsLedgerEntry.created_at.desc(), PointsLedgerEntry.id.desc())
        )
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    PointsLedgerEntry.created_at < cursor_time,
                    and_(
                        PointsLedgerEntry.created_at == cursor_time,
                        PointsLedgerEntry.id < cursor_id,
                    ),
                )
            )

        result = await self._db.execute(stmt.limit(bounded_limit + 1))
        rows = list(result.scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (tail.created_at, tail.id)
        return entries, next_cursor


__all__ = ["CardDirectory", "MAX_PAGE_SIZE", "load_card", "normalize_uid"]
