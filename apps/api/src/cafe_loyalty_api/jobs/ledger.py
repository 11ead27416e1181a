"""Scheduled expiration sweep across every card holding expired points."""

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.core.settings import settings
from cafe_loyalty_api.services.ledger import ExpirationSweeper

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def sweep_expired_points(
    *,
    session_factory: SessionFactory,
    batch_size: int | None = None,
    now: dt.datetime | None = None,
) -> Dict[str, Any]:
    """Deduct expired entries for up to `batch_size` cards, one transaction per card."""

    limit = batch_size or settings.expiration_sweep_batch_size
    reference_time = now or dt.datetime.now(dt.timezone.utc)

    session = await _open_session(session_factory)
    async with session as managed_session:
        sweeper = ExpirationSweeper(managed_session)
        report = await sweeper.sweep_due_cards(now=reference_time, limit=limit)

    summary = report.as_dict()
    logger.bind(summary=summary).info("Expiration sweep completed")
    return summary


__all__ = ["sweep_expired_points"]
