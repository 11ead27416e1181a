"""Reward catalog lookups used by the redemption screens."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_loyalty_api.models.loyalty import LoyaltyReward

from .errors import RewardNotFound, StorageFailure


class RewardCatalog:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create_reward(
        self,
        *,
        name: str,
        points_required: int,
        quantity: int | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> LoyaltyReward:
        """Create a reward; a positive quantity makes its stock tracked."""

        cleaned_name = (name or "").strip()
        if not cleaned_name:
            raise ValueError("Reward name must not be empty")
        if points_required <= 0:
            raise ValueError("Rewards must require a positive number of points")
        if quantity is not None and quantity < 0:
            raise ValueError("Reward quantity must not be negative")

        reward = LoyaltyReward(
            name=cleaned_name,
            description=description,
            points_required=points_required,
            quantity=quantity,
            is_active=is_active,
        )
        self._db.add(reward)
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Failed to create reward", name=cleaned_name)
            raise StorageFailure("Unable to create reward") from exc

        await self._db.refresh(reward)
        logger.info(
            "Created loyalty reward",
            reward_id=str(reward.id),
            points_required=points_required,
            stock_tracked=reward.stock_tracked,
        )
        return reward

    async def get_reward(self, reward_id: UUID) -> LoyaltyReward:
        reward = await self._db.get(LoyaltyReward, reward_id, populate_existing=True)
        if reward is None:
            raise RewardNotFound(reward_id)
        return reward

    async def list_rewards(
        self,
        *,
        active_only: bool = True,
        max_points: int | None = None,
    ) -> list[LoyaltyReward]:
        stmt = select(LoyaltyReward).order_by(LoyaltyReward.points_required.asc(), LoyaltyReward.name.asc())
        if active_only:
            stmt = stmt.where(LoyaltyReward.is_active.is_(True))
        if max_points is not None:
            stmt = stmt.where(LoyaltyReward.points_required <= max_points)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


__all__ = ["RewardCatalog"]
