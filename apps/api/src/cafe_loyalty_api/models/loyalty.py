"""Loyalty card, points ledger, reward and redemption models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from cafe_loyalty_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class LoyaltyCardStatus(str, Enum):
    """Lifecycle status of a physical loyalty card."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class LoyaltyCard(Base):
    """Loyalty account bound 1:1 to a scanned card; `points_balance` caches the ledger."""

    __tablename__ = "loyalty_cards"
    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="points_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    uid = Column(String(64), nullable=False, unique=True, index=True)
    holder_name = Column(String, nullable=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    status = Column(
        SqlEnum(LoyaltyCardStatus, name="loyalty_card_status", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyCardStatus.ACTIVE,
        server_default=LoyaltyCardStatus.ACTIVE.value,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    ledger_entries = relationship("PointsLedgerEntry", back_populates="card")
    redemptions = relationship("LoyaltyRedemption", back_populates="card")

    @property
    def is_active(self) -> bool:
        return self.status == LoyaltyCardStatus.ACTIVE


class PointsLedgerEntry(Base):
    """One points-earning event; flipped to `deducted` exactly once by the expiration sweep."""

    __tablename__ = "points_ledger_entries"
    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint(
            "deducted_amount IS NULL OR (deducted_amount >= 0 AND deducted_amount <= amount)",
            name="deducted_amount_within_amount",
        ),
        Index("ix_points_ledger_entries_card_sweep", "card_id", "deducted", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    card_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_cards.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    deducted = Column(Boolean, nullable=False, default=False, server_default="false")
    deducted_at = Column(DateTime(timezone=True), nullable=True)
    # Points actually removed from the balance; less than `amount` when the zero floor absorbed the rest.
    deducted_amount = Column(Integer, nullable=True)
    reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    card = relationship("LoyaltyCard", back_populates="ledger_entries")


def _default_stock_tracked(context) -> bool:
    quantity = context.get_current_parameters().get("quantity")
    return bool(quantity and quantity > 0)


class LoyaltyReward(Base):
    """Redeemable reward; stock is only enforced when the reward was created with a positive quantity."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        CheckConstraint("points_required > 0", name="points_required_positive"),
        CheckConstraint("quantity IS NULL OR quantity >= 0", name="quantity_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_required = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=True)
    stock_tracked = Column(Boolean, nullable=False, default=_default_stock_tracked, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    redemptions = relationship("LoyaltyRedemption", back_populates="reward")

    @property
    def is_unlimited(self) -> bool:
        return not self.stock_tracked


class LoyaltyRedemptionStatus(str, Enum):
    """Redemptions are recorded once the points and stock have been debited."""

    COMPLETED = "completed"


class LoyaltyRedemption(Base):
    """Append-only audit record of a reward redemption."""

    __tablename__ = "loyalty_redemptions"
    __table_args__ = (
        UniqueConstraint("card_id", "client_reference", name="uq_loyalty_redemptions_card_reference"),
        CheckConstraint("points_used > 0", name="points_used_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    card_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_cards.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    reward_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_rewards.id", ondelete="RESTRICT"),
        nullable=False,
    )
    points_used = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(LoyaltyRedemptionStatus, name="loyalty_redemption_status", values_callable=_enum_values),
        nullable=False,
        default=LoyaltyRedemptionStatus.COMPLETED,
        server_default=LoyaltyRedemptionStatus.COMPLETED.value,
    )
    read = Column(Boolean, nullable=False, default=False, server_default="false")
    client_reference = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    card = relationship("LoyaltyCard", back_populates="redemptions")
    reward = relationship("LoyaltyReward", back_populates="redemptions")
