"""Position tree storage operations.

The tree for a plan level is the set of positions at that level linked by
``parent_id``. Each position carries per-depth slot counters; this module is
the only place that reads or moves them.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.errors import CapacityExceeded
from matrix_engine.models import MAX_DEPTH, Position, PositionStatus
from matrix_engine.services.position_state import PositionStateMachine


class PositionTree:
    """Queries and counter updates over positions.

    Creation order is ascending ``(created_at, id)`` everywhere.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_position(
        self,
        owner_id: int,
        plan_level: int,
        sponsor_id: int | None,
        now: datetime,
    ) -> Position:
        """Insert a new ACTIVE, unattached position with zeroed counters."""
        position = Position(
            owner_id=owner_id,
            plan_level=plan_level,
            parent_id=None,
            sponsor_id=sponsor_id,
            total_earned=Decimal("0"),
            cycle_count=0,
            status=PositionStatus.ACTIVE.value,
            created_at=now,
        )
        for depth in range(1, MAX_DEPTH + 1):
            position.set_child_count(depth, 0)
        self.session.add(position)
        await self.session.flush()
        return position

    async def get(self, position_id: int) -> Position | None:
        return await self.session.get(Position, position_id)

    async def first_active_position(
        self, owner_id: int, plan_level: int, exclude_id: int | None = None
    ) -> Position | None:
        """Earliest ACTIVE position owned by ``owner_id`` at the level."""
        query = select(Position).where(
            Position.owner_id == owner_id,
            Position.plan_level == plan_level,
            Position.status == PositionStatus.ACTIVE.value,
        )
        if exclude_id is not None:
            query = query.where(Position.id != exclude_id)
        result = await self.session.execute(
            query.order_by(Position.created_at, Position.id).limit(1)
        )
        return result.scalar_one_or_none()

    async def has_active_position(self, owner_id: int, plan_level: int) -> bool:
        return await self.first_active_position(owner_id, plan_level) is not None

    async def children_of(self, parent_ids: list[int]) -> list[Position]:
        """Direct children of any of ``parent_ids``, in creation order."""
        if not parent_ids:
            return []
        result = await self.session.execute(
            select(Position)
            .where(Position.parent_id.in_(parent_ids))
            .order_by(Position.created_at, Position.id)
        )
        return list(result.scalars().all())

    async def first_open_position(
        self, plan_level: int, width: int, exclude_id: int
    ) -> Position | None:
        """Earliest ACTIVE position at the level with a free depth-1 slot."""
        result = await self.session.execute(
            select(Position)
            .where(
                Position.plan_level == plan_level,
                Position.status == PositionStatus.ACTIVE.value,
                Position.id != exclude_id,
                Position.level1_count < width,
            )
            .order_by(Position.created_at, Position.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_at_level(self, plan_level: int, exclude_id: int | None = None) -> int:
        """Number of positions at the level, in any status."""
        query = select(func.count()).select_from(Position).where(
            Position.plan_level == plan_level
        )
        if exclude_id is not None:
            query = query.where(Position.id != exclude_id)
        result = await self.session.execute(query)
        return int(result.scalar() or 0)

    async def latest_created_since(
        self, owner_id: int, plan_level: int, since: datetime
    ) -> Position | None:
        """Most recently created position for the pair at or after ``since``."""
        result = await self.session.execute(
            select(Position)
            .where(
                Position.owner_id == owner_id,
                Position.plan_level == plan_level,
                Position.created_at >= since,
            )
            .order_by(Position.created_at.desc(), Position.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def attach(self, child: Position, parent: Position) -> None:
        """Link ``child`` under ``parent`` in the tree."""
        child.parent_id = parent.id
        await self.session.flush()

    async def increment_child_count(
        self, position: Position, depth: int, capacity: int
    ) -> int:
        """Record one more descendant at relative ``depth``.

        Returns the new count. Raises CapacityExceeded if the count would pass
        ``capacity``.
        """
        count = position.child_count(depth) + 1
        if count > capacity:
            raise CapacityExceeded(position.id, depth, count, capacity)
        position.set_child_count(depth, count)
        await self.session.flush()
        return count

    async def qualifies_for_matching(
        self, sponsor_id: int | None, plan_level: int, non_matrix_match: bool
    ) -> bool:
        """Whether a sponsor may receive matching bonuses at this level.

        The sponsor needs an ACTIVE position at the level unless the
        non-matrix match override is on.
        """
        if sponsor_id is None:
            return False
        if non_matrix_match:
            return True
        return await self.has_active_position(sponsor_id, plan_level)

    @staticmethod
    def has_free_slot(position: Position, width: int) -> bool:
        return (
            PositionStateMachine.accepts_placement(position.status)
            and position.child_count(1) < width
        )
