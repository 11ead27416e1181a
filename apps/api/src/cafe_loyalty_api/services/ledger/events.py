"""In-process change notifications published after ledger commits."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Awaitable, Callable, Union
from uuid import UUID

from loguru import logger

POINTS_AWARDED = "points.awarded"
POINTS_EXPIRED = "points.expired"
REWARD_REDEEMED = "reward.redeemed"


@dataclass(slots=True)
class LedgerEvent:
    """Payload delivered to subscribers once a mutation is durable."""

    kind: str
    card_id: UUID
    points: int
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


LedgerSubscriber = Callable[[LedgerEvent], Union[None, Awaitable[None]]]


class LedgerEventBus:
    """Fan out committed ledger changes to dashboards and history views."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: list[LedgerSubscriber] = []

    def subscribe(self, callback: LedgerSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    async def publish(self, event: LedgerEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # pragma: no cover - subscriber faults are logged only
                logger.exception(
                    "Ledger event subscriber failed",
                    kind=event.kind,
                    card_id=str(event.card_id),
                )

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


_BUS = LedgerEventBus()


def get_ledger_event_bus() -> LedgerEventBus:
    return _BUS


__all__ = [
    "LedgerEvent",
    "LedgerEventBus",
    "LedgerSubscriber",
    "POINTS_AWARDED",
    "POINTS_EXPIRED",
    "REWARD_REDEEMED",
    "get_ledger_event_bus",
]
