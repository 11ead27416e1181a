"""Tunable points policy resolved from settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from cafe_loyalty_api.core.settings import Settings, settings as default_settings

MAX_EXPIRATION_DAYS = 3650
MAX_LOOKAHEAD_DAYS = 365


@dataclass(frozen=True, slots=True)
class LedgerPolicy:
    expiration_days: int = 15
    expiring_soon_days: int = 7
    conflict_retries: int = 1

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "LedgerPolicy":
        config = config or default_settings
        return cls(
            expiration_days=config.points_expiration_days,
            expiring_soon_days=config.points_expiring_soon_days,
            conflict_retries=config.redemption_conflict_retries,
        )

    def expiration_window(self, offset_days: int | None = None) -> timedelta:
        days = self.expiration_days if offset_days is None else offset_days
        if days < 0:
            raise ValueError("Expiration offset must not be negative")
        if days > MAX_EXPIRATION_DAYS:
            raise ValueError(f"Expiration offset must not exceed {MAX_EXPIRATION_DAYS} days")
        return timedelta(days=days)

    def lookahead_window(self, lookahead_days: int | None = None) -> timedelta:
        days = self.expiring_soon_days if lookahead_days is None else lookahead_days
        if days < 0:
            raise ValueError("Lookahead must not be negative")
        if days > MAX_LOOKAHEAD_DAYS:
            raise ValueError(f"Lookahead must not exceed {MAX_LOOKAHEAD_DAYS} days")
        return timedelta(days=days)
