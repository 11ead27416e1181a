from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LedgerSnapshot:
    operations: Dict[str, int]
    points: Dict[str, int]
    failures: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "operations": dict(self.operations),
            "points": dict(self.points),
            "failures": dict(self.failures),
        }


class LedgerObservabilityStore:
    """Collect points ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._operations: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)

    def record_award(self, points: int) -> None:
        with self._lock:
            self._operations["awards"] += 1
            self._points["awarded"] += points

    def record_zero_award(self) -> None:
        with self._lock:
            self._operations["awards_skipped"] += 1

    def record_sweep(self, points: int, *, absorbed: int = 0) -> None:
        with self._lock:
            self._operations["sweeps"] += 1
            if points > 0:
                self._operations["sweeps_with_expirations"] += 1
                self._points["expired"] += points
            if absorbed > 0:
                self._points["expiration_absorbed"] += absorbed

    def record_redemption(self, points: int, *, replayed: bool = False) -> None:
        with self._lock:
            if replayed:
                self._operations["redemptions_replayed"] += 1
                return
            self._operations["redemptions"] += 1
            self._points["redeemed"] += points

    def record_conflict_retry(self) -> None:
        with self._lock:
            self._operations["conflict_retries"] += 1

    def record_failure(self, operation: str, code: str) -> None:
        with self._lock:
            self._failures[f"{operation}:{code}"] += 1

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                operations=dict(self._operations),
                points=dict(self._points),
                failures=dict(self._failures),
            )

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._points.clear()
            self._failures.clear()


_STORE = LedgerObservabilityStore()


def get_ledger_store() -> LedgerObservabilityStore:
    return _STORE


__all__ = ["get_ledger_store", "LedgerObservabilityStore", "LedgerSnapshot"]
