"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyCard,
    LoyaltyCardStatus,
    LoyaltyRedemption,
    LoyaltyRedemptionStatus,
    LoyaltyReward,
    PointsLedgerEntry,
)
