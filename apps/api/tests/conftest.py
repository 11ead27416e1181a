import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cafe_loyalty_api.app import create_app
from cafe_loyalty_api.db.base import Base
from cafe_loyalty_api.db.session import get_session
from cafe_loyalty_api.models.loyalty import LoyaltyCard, LoyaltyCardStatus, LoyaltyReward
from cafe_loyalty_api.observability.ledger import get_ledger_store
from cafe_loyalty_api.observability.scheduler import get_scheduler_store
from cafe_loyalty_api.services.ledger import LedgerEventBus, LedgerPolicy


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await _create_schema(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions use separate connections."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    await _create_schema(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_observability():
    get_ledger_store().reset()
    get_scheduler_store().reset()
    yield
    get_ledger_store().reset()
    get_scheduler_store().reset()


@pytest.fixture
def policy() -> LedgerPolicy:
    return LedgerPolicy(expiration_days=15, expiring_soon_days=7, conflict_retries=1)


@pytest.fixture
def event_bus() -> LedgerEventBus:
    return LedgerEventBus()


async def _create_card(
    factory,
    *,
    uid: str = "04:A2:19:7F",
    balance: int = 0,
    status: LoyaltyCardStatus = LoyaltyCardStatus.ACTIVE,
) -> LoyaltyCard:
    async with factory() as session:
        card = LoyaltyCard(uid=uid, points_balance=balance, status=status)
        session.add(card)
        await session.commit()
        return card


async def _create_reward(
    factory,
    *,
    name: str = "Free Latte",
    points_required: int = 100,
    quantity: int | None = None,
    is_active: bool = True,
) -> LoyaltyReward:
    async with factory() as session:
        reward = LoyaltyReward(
            name=name,
            points_required=points_required,
            quantity=quantity,
            is_active=is_active,
        )
        session.add(reward)
        await session.commit()
        await session.refresh(reward)
        return reward


@pytest.fixture
def make_card():
    return _create_card


@pytest.fixture
def make_reward():
    return _create_reward
