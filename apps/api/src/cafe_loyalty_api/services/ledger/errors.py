"""Ledger error taxonomy shared by services and HTTP handlers."""

from __future__ import annotations

from typing import Any
from uuid import UUID


class LedgerError(RuntimeError):
    """Base exception for points ledger failures."""

    code = "ledger_error"

    def as_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class CardNotFound(LedgerError):
    """Raised when a card id or scanned uid does not resolve to an account."""

    code = "card_not_found"

    def __init__(self, card_ref: UUID | str) -> None:
        super().__init__(f"Loyalty card {card_ref} was not found")
        self.card_ref = card_ref


class CardInactive(LedgerError):
    """Raised when awarding or redeeming against a deactivated card."""

    code = "card_inactive"

    def __init__(self, card_id: UUID) -> None:
        super().__init__(f"Loyalty card {card_id} is inactive")
        self.card_id = card_id


class CardAlreadyExists(LedgerError):
    code = "card_already_exists"

    def __init__(self, uid: str) -> None:
        super().__init__(f"A loyalty card with uid {uid} already exists")
        self.uid = uid


class RewardNotFound(LedgerError):
    code = "reward_not_found"

    def __init__(self, reward_id: UUID) -> None:
        super().__init__(f"Reward {reward_id} was not found")
        self.reward_id = reward_id


class RewardInactive(LedgerError):
    code = "reward_inactive"

    def __init__(self, reward_id: UUID) -> None:
        super().__init__(f"Reward {reward_id} is not available")
        self.reward_id = reward_id


class RewardOutOfStock(LedgerError):
    code = "reward_out_of_stock"

    def __init__(self, reward_id: UUID) -> None:
        super().__init__(f"Reward {reward_id} is out of stock")
        self.reward_id = reward_id


class InsufficientPoints(LedgerError):
    """Raised when the swept balance cannot cover a reward."""

    code = "insufficient_points"

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        self.shortfall = max(required - balance, 0)
        super().__init__(f"Balance {balance} is {self.shortfall} points short of {required}")

    def as_detail(self) -> dict[str, Any]:
        detail = super().as_detail()
        detail.update(balance=self.balance, required=self.required, shortfall=self.shortfall)
        return detail


class ClientReferenceConflict(LedgerError):
    """Raised when a client reference is reused for a different reward."""

    code = "client_reference_conflict"

    def __init__(self, client_reference: str, recorded_reward_id: UUID) -> None:
        super().__init__(
            f"Client reference {client_reference} already redeemed reward {recorded_reward_id}"
        )
        self.client_reference = client_reference
        self.recorded_reward_id = recorded_reward_id

    def as_detail(self) -> dict[str, Any]:
        detail = super().as_detail()
        detail.update(clientReference=self.client_reference, recordedRewardId=str(self.recorded_reward_id))
        return detail


class ConcurrencyConflict(LedgerError):
    """Raised when a conditional update lost a race it could not be explained by."""

    code = "concurrency_conflict"


class StorageFailure(LedgerError):
    """Raised when the backing store rejected a ledger transaction."""

    code = "storage_failure"


__all__ = [
    "CardAlreadyExists",
    "CardInactive",
    "CardNotFound",
    "ClientReferenceConflict",
    "ConcurrencyConflict",
    "InsufficientPoints",
    "LedgerError",
    "RewardInactive",
    "RewardNotFound",
    "RewardOutOfStock",
    "StorageFailure",
]
