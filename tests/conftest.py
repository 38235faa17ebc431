"""Pytest fixtures for matrix engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from matrix_engine.config import EngineConfig
from matrix_engine.database import make_session_factory
from matrix_engine.models import Base, Member, MemberStatus, MemberType, Position
from matrix_engine.plans import ConfigStore, PlanLevel

# In-memory SQLite shared across connections via StaticPool
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


class MatrixTestData:
    """Test data generator for matrix engine tests."""

    def __init__(self):
        self._seq = 0

    def plan(self, **overrides: Any) -> PlanLevel:
        """A 2x2 forced plan level; override any field."""
        fields: dict[str, Any] = {
            "level": 1,
            "name": "Starter",
            "width": 2,
            "depth": 2,
        }
        fields.update(overrides)
        return PlanLevel(**fields)

    def store(self, *plans: PlanLevel) -> ConfigStore:
        return ConfigStore(plans or [self.plan()])

    async def member(
        self,
        db: AsyncSession,
        username: str | None = None,
        sponsor: Member | None = None,
        status: MemberStatus = MemberStatus.ACTIVE,
        member_type: MemberType = MemberType.PAID,
        wallet_address: str | None = None,
    ) -> Member:
        """Create a member with zeroed credits."""
        self._seq += 1
        member = Member(
            username=username or f"member{self._seq}",
            status=status.value,
            member_type=member_type.value,
            sponsor_id=sponsor.id if sponsor is not None else None,
            wallet_address=wallet_address,
            text_credits=0,
            banner_credits=0,
        )
        db.add(member)
        await db.flush()
        return member

    async def members(self, db: AsyncSession, count: int, **kwargs: Any) -> list[Member]:
        return [await self.member(db, **kwargs) for _ in range(count)]

    async def position(
        self,
        db: AsyncSession,
        owner: Member,
        plan_level: int = 1,
        parent: Position | None = None,
        sponsor: Member | None = None,
        created_at: datetime | None = None,
        **counts: int,
    ) -> Position:
        """Insert a position directly, bypassing placement.

        ``counts`` sets slot counters, e.g. ``level1_count=2``.
        """
        position = Position(
            owner_id=owner.id,
            plan_level=plan_level,
            parent_id=parent.id if parent is not None else None,
            sponsor_id=sponsor.id if sponsor is not None else None,
            total_earned=Decimal("0"),
            cycle_count=0,
            status="ACTIVE",
            created_at=created_at or datetime(2024, 1, 1),
        )
        for depth in range(1, 11):
            position.set_child_count(depth, counts.get(f"level{depth}_count", 0))
        db.add(position)
        await db.flush()
        return position


@pytest.fixture
def test_data() -> MatrixTestData:
    """Create test data generator."""
    return MatrixTestData()
