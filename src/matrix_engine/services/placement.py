"""Placement engine - finds where a new position attaches in the tree."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.config import EngineConfig
from matrix_engine.errors import NoAvailableSlot
from matrix_engine.models import Member, MemberStatus, Position, utcnow
from matrix_engine.plans import MatrixType, PlanLevel
from matrix_engine.services.position_tree import PositionTree

logger = logging.getLogger(__name__)


class PlacementMethod(str, Enum):
    """How the attachment point was found."""

    ROOT = "root"
    DIRECT = "direct"
    SPILLOVER = "spillover"
    GLOBAL = "global"


class PlacementEngine:
    """Creates positions and attaches them under a parent.

    Attachment order for FORCED plans:
    1) The sponsor's earliest ACTIVE position, if its depth-1 slot is free
    2) Spillover: breadth-first over that position's descendants, at most
       ``depth - 1`` levels down, first ACTIVE one (creation order) with a
       free depth-1 slot
    3) Global scan: earliest ACTIVE position at the level with a free slot

    UNFORCED plans go straight to the global scan. The first position at an
    empty level becomes its root.

    The parent's depth-1 counter is not touched here; the payout walk counts
    the new descendant at every ancestor depth, starting with the parent.
    """

    def __init__(self, session: AsyncSession, config: EngineConfig):
        self.session = session
        self.config = config
        self.tree = PositionTree(session)

    async def place(
        self,
        owner: Member,
        plan: PlanLevel,
        sponsor_user_id: int | None = None,
        now: datetime | None = None,
    ) -> Position:
        """Create a position for ``owner`` and attach it.

        Raises NoAvailableSlot if positions exist at the level but none has a
        free slot.
        """
        now = now or utcnow()
        position = await self.tree.create_position(
            owner_id=owner.id,
            plan_level=plan.level,
            sponsor_id=sponsor_user_id,
            now=now,
        )

        parent, method = await self.find_attachment(position, plan, sponsor_user_id)
        if parent is None:
            if await self.tree.count_at_level(plan.level, exclude_id=position.id) > 0:
                raise NoAvailableSlot(plan.level)
            method = PlacementMethod.ROOT
        else:
            await self.tree.attach(position, parent)

        owner.text_credits += plan.entry_credits.text_credits
        owner.banner_credits += plan.entry_credits.banner_credits
        owner.status = MemberStatus.ACTIVE.value
        await self.session.flush()

        logger.info(
            "Placed position %s for member %s at level %s under %s (%s)",
            position.id,
            owner.username,
            plan.level,
            position.parent_id,
            method.value,
        )
        return position

    async def find_attachment(
        self,
        position: Position,
        plan: PlanLevel,
        sponsor_user_id: int | None,
    ) -> tuple[Position | None, PlacementMethod]:
        """Pick the parent for ``position`` without modifying anything."""
        if plan.matrix_type == MatrixType.FORCED and sponsor_user_id is not None:
            sponsor_position = await self.find_sponsor_position(
                sponsor_user_id, plan.level, exclude_id=position.id
            )
            if sponsor_position is not None:
                if self.tree.has_free_slot(sponsor_position, plan.width):
                    return sponsor_position, PlacementMethod.DIRECT

                spillover = await self.find_spillover(sponsor_position, plan)
                if spillover is not None:
                    return spillover, PlacementMethod.SPILLOVER

        fallback = await self.tree.first_open_position(
            plan.level, plan.width, exclude_id=position.id
        )
        return fallback, PlacementMethod.GLOBAL

    async def find_sponsor_position(
        self,
        sponsor_user_id: int,
        plan_level: int,
        exclude_id: int | None = None,
    ) -> Position | None:
        """The sponsor's ACTIVE position at the level.

        With ``allow_sponsor_lookup`` on, falls back to the nearest ACTIVE
        position held by an ACTIVE member up the sponsor's referral chain, at
        most ``sponsor_lookup_hops`` members up.
        """
        position = await self.tree.first_active_position(
            sponsor_user_id, plan_level, exclude_id=exclude_id
        )
        if position is not None or not self.config.allow_sponsor_lookup:
            return position

        seen = {sponsor_user_id}
        member = await self.session.get(Member, sponsor_user_id)
        for _ in range(self.config.sponsor_lookup_hops):
            if member is None or member.sponsor_id is None or member.sponsor_id in seen:
                break
            seen.add(member.sponsor_id)
            member = await self.session.get(Member, member.sponsor_id)
            if member is None:
                break
            if member.status != MemberStatus.ACTIVE.value:
                continue
            position = await self.tree.first_active_position(
                member.id, plan_level, exclude_id=exclude_id
            )
            if position is not None:
                logger.debug(
                    "Sponsor %s has no position at level %s, using upline %s",
                    sponsor_user_id,
                    plan_level,
                    member.username,
                )
                return position
        return None

    async def find_spillover(self, root: Position, plan: PlanLevel) -> Position | None:
        """Breadth-first search below ``root`` for a free depth-1 slot."""
        frontier = [root.id]
        for _ in range(plan.depth - 1):
            children = await self.tree.children_of(frontier)
            if not children:
                break
            for child in children:
                if self.tree.has_free_slot(child, plan.width):
                    return child
            frontier = [child.id for child in children]
        return None
