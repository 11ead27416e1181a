"""Points ledger services: awards, expiration, summaries and redemptions."""

from .awards import AwardLineItem, AwardPipeline, compute_award_points
from .cards import CardDirectory
from .errors import (
    CardAlreadyExists,
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
from .events import LedgerEvent, LedgerEventBus, get_ledger_event_bus
from .expiration import ExpirationSweeper, SweepReport
from .pagination import decode_time_uuid_cursor, encode_time_uuid_cursor
from .policy import LedgerPolicy
from .redemptions import RedemptionEngine
from .rewards import RewardCatalog
from .summary import BalanceReconciliation, BalanceSummarizer, PointsSummary

__all__ = [
    "AwardLineItem",
    "AwardPipeline",
    "BalanceReconciliation",
    "BalanceSummarizer",
    "CardAlreadyExists",
    "CardDirectory",
    "CardInactive",
    "CardNotFound",
    "ClientReferenceConflict",
    "ConcurrencyConflict",
    "ExpirationSweeper",
    "InsufficientPoints",
    "LedgerError",
    "LedgerEvent",
    "LedgerEventBus",
    "LedgerPolicy",
    "PointsSummary",
    "RedemptionEngine",
    "RewardCatalog",
    "RewardInactive",
    "RewardNotFound",
    "RewardOutOfStock",
    "StorageFailure",
    "SweepReport",
    "compute_award_points",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
    "get_ledger_event_bus",
]
