"""Balance summarizer: read-only aggregates over a card's ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.models.loyalty import LoyaltyRedemption, PointsLedgerEntry
from cafe_loyalty_api.observability.tracing import ledger_span

from .cards import load_card
from .pagination import ensure_utc, utcnow
from .policy import LedgerPolicy


@dataclass(slots=True)
class PointsSummary:
    """UI-facing points figures for a card at one instant."""

    card_id: UUID
    total_live: int
    expired_unswept: int
    expiring_soon: int
    next_expiration_at: datetime | None
    safe_balance: int
    points_balance: int
    lookahead_days: int
    computed_at: datetime


@dataclass(slots=True)
class BalanceReconciliation:
    card_id: UUID
    cached_balance: int
    ledger_balance: int
    expired_unswept: int
    redeemed_points: int
    computed_at: datetime
    expiration_absorbed: int = 0

    @property
    def drift(self) -> int:
        # Expired entries stay in the cached balance until the sweep deducts them; points the
        # zero floor absorbed were already spent and never left the balance a second time.
        return self.cached_balance - (self.ledger_balance + self.expired_unswept + self.expiration_absorbed)

    @property
    def is_consistent(self) -> bool:
        return self.drift == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "card_id": str(self.card_id),
            "cached_balance": self.cached_balance,
            "ledger_balance": self.ledger_balance,
            "expired_unswept": self.expired_unswept,
            "redeemed_points": self.redeemed_points,
            "expiration_absorbed": self.expiration_absorbed,
            "drift": self.drift,
            "is_consistent": self.is_consistent,
        }


def _sum_where(condition):
    return func.coalesce(func.sum(case((condition, PointsLedgerEntry.amount), else_=0)), 0)


class BalanceSummarizer:
    """Computes display figures without touching ledger state."""

    def __init__(self, db_session: AsyncSession, *, policy: LedgerPolicy | None = None) -> None:
        self._db = db_session
        self._policy = policy or LedgerPolicy.from_settings()

    async def _aggregate(self, card_id: UUID, now: datetime, horizon: datetime):
        not_deducted = PointsLedgerEntry.deducted.is_(False)
        live = and_(
            not_deducted,
            or_(PointsLedgerEntry.expires_at.is_(None), PointsLedgerEntry.expires_at > now),
        )
        expired = and_(
            not_deducted,
            PointsLedgerEntry.expires_at.is_not(None),
            PointsLedgerEntry.expires_at <= now,
        )
        expiring = and_(
            not_deducted,
            PointsLedgerEntry.expires_at > now,
            PointsLedgerEntry.expires_at <= horizon,
        )
        stmt = select(
            _sum_where(live),
            _sum_where(expired),
            _sum_where(expiring),
            func.min(case((and_(not_deducted, PointsLedgerEntry.expires_at > now), PointsLedgerEntry.expires_at))),
        ).where(PointsLedgerEntry.card_id == card_id)
        row = (await self._db.execute(stmt)).one()
        return int(row[0]), int(row[1]), int(row[2]), row[3]

    async def summarize(
        self,
        card_id: UUID,
        lookahead_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> PointsSummary:
        reference_time = utcnow(now)
        window = self._policy.lookahead_window(lookahead_days)
        with ledger_span("ledger.summarize", card_id=card_id):
            card = await load_card(self._db, card_id)
            total_live, expired_unswept, expiring_soon, next_expiration = await self._aggregate(
                card_id, reference_time, reference_time + window
            )

        return PointsSummary(
            card_id=card_id,
            total_live=total_live,
            expired_unswept=expired_unswept,
            expiring_soon=expiring_soon,
            next_expiration_at=_coerce_datetime(next_expiration),
            safe_balance=total_live - expiring_soon,
            points_balance=int(card.points_balance or 0),
            lookahead_days=window.days,
            computed_at=reference_time,
        )

    async def recompute_balance(self, card_id: UUID, *, now: datetime | None = None) -> BalanceReconciliation:
        """Compare the cached balance with the balance implied by the ledger and redemptions."""

        reference_time = utcnow(now)
        card = await load_card(self._db, card_id)
        total_live, expired_unswept, _, _ = await self._aggregate(card_id, reference_time, reference_time)
        redeemed = await self._db.scalar(
            select(func.coalesce(func.sum(LoyaltyRedemption.points_used), 0)).where(
                LoyaltyRedemption.card_id == card_id
            )
        )
        absorbed = await self._db.scalar(
            select(
                func.coalesce(
                    func.sum(
                        PointsLedgerEntry.amount
                        - func.coalesce(PointsLedgerEntry.deducted_amount, PointsLedgerEntry.amount)
                    ),
                    0,
                )
            ).where(PointsLedgerEntry.card_id == card_id, PointsLedgerEntry.deducted.is_(True))
        )
        return BalanceReconciliation(
            card_id=card_id,
            cached_balance=int(card.points_balance or 0),
            ledger_balance=total_live - int(redeemed or 0),
            expired_unswept=expired_unswept,
            redeemed_points=int(redeemed or 0),
            computed_at=reference_time,
            expiration_absorbed=int(absorbed or 0),
        )


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return ensure_utc(value)


__all__ = ["BalanceReconciliation", "BalanceSummarizer", "PointsSummary"]
