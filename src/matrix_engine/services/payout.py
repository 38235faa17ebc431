"""Payout engine - walks a new position's ancestors and pays bonuses."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.config import EngineConfig
from matrix_engine.models import (
    BonusPurpose,
    EventKind,
    Member,
    MemberStatus,
    MemberType,
    Position,
    utcnow,
)
from matrix_engine.plans import PayoutMode, PlanLevel
from matrix_engine.services.cycle import CycleCompletionHandler
from matrix_engine.services.effects import DeferredEffects
from matrix_engine.services.ledger_service import ZERO, BonusPosting, LedgerService
from matrix_engine.services.position_state import PositionStateMachine
from matrix_engine.services.position_tree import PositionTree

logger = logging.getLogger(__name__)


@dataclass
class PropagationResult:
    """What one upward walk did."""

    depth_reached: int = 0
    postings: list[BonusPosting] = field(default_factory=list)
    cycled_position_ids: list[int] = field(default_factory=list)

    @property
    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.postings), ZERO)


class PayoutEngine:
    """Counts a new position at each ancestor and pays the resulting bonuses.

    For the ancestor at relative depth d (1 = parent) the walk:
    1) increments its depth-d counter, failing past width**d
    2) pays the owner per the plan's payout mode
    3) pays the owner's sponsor a matching bonus if eligible
    4) completes the ancestor's cycle when depth d is the plan depth and full

    The walk is bounded by the plan depth and follows ``parent_id`` links.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: EngineConfig,
        effects: DeferredEffects | None = None,
        cycle_handler: CycleCompletionHandler | None = None,
    ):
        self.session = session
        self.config = config
        self.effects = effects if effects is not None else DeferredEffects()
        self.tree = PositionTree(session)
        self.ledger = LedgerService(session, config)
        self.cycle_handler = cycle_handler or CycleCompletionHandler(
            session, config, self.effects
        )

    async def propagate(
        self,
        position: Position,
        plan: PlanLevel,
        now: datetime | None = None,
    ) -> PropagationResult:
        """Walk up from ``position`` and apply counters, bonuses and cycles."""
        now = now or utcnow()
        result = PropagationResult()

        parent_id = position.parent_id
        depth = 1
        while parent_id is not None and depth <= plan.depth:
            ancestor = await self.tree.get(parent_id)
            if ancestor is None:
                logger.warning(
                    "Position %s references missing parent %s", position.id, parent_id
                )
                break

            capacity = plan.capacity(depth)
            count = await self.tree.increment_child_count(ancestor, depth, capacity)
            filled = count == capacity
            result.depth_reached = depth

            if PositionStateMachine.accepts_placement(ancestor.status):
                await self._pay_depth(ancestor, plan, depth, filled, result)
                if depth == plan.depth and filled:
                    await self.cycle_handler.on_cycle_complete(ancestor, plan, now)
                    result.cycled_position_ids.append(ancestor.id)

            parent_id = ancestor.parent_id
            depth += 1

        return result

    async def _pay_depth(
        self,
        ancestor: Position,
        plan: PlanLevel,
        depth: int,
        filled: bool,
        result: PropagationResult,
    ) -> None:
        if plan.payout_mode == PayoutMode.PER_LEVEL:
            amount = plan.bonus_at(plan.per_level_bonus, depth)
            match = plan.bonus_at(plan.matching_bonus, depth)
            purpose = BonusPurpose.LEVEL_BONUS
        elif plan.payout_mode == PayoutMode.CYCLE_ON_LEVEL_FILL:
            if not filled:
                return
            amount = plan.bonus_at(plan.cycle_bonus, depth)
            match = plan.bonus_at(plan.cycle_matching_bonus, depth)
            purpose = BonusPurpose.CYCLE_BONUS
        else:
            if not (filled and depth == plan.depth):
                return
            amount = plan.matrix_bonus
            match = plan.matrix_matching_bonus
            purpose = BonusPurpose.MATRIX_BONUS

        posting = await self.ledger.apply_bonus(
            ancestor.owner_id,
            ancestor.id,
            plan.level,
            amount,
            purpose,
            depth=depth,
            description=f"{plan.name} {purpose.value.lower()} at depth {depth}",
        )
        if posting is None:
            return
        ancestor.total_earned += posting.amount
        self._record(posting, result)

        if match <= ZERO:
            return
        if not await self.tree.qualifies_for_matching(
            ancestor.sponsor_id, plan.level, self.config.non_matrix_match
        ):
            logger.debug(
                "Matching bonus for position %s suppressed, sponsor %s not qualified",
                ancestor.id,
                ancestor.sponsor_id,
            )
            return
        matching = await self.ledger.apply_bonus(
            ancestor.sponsor_id,
            ancestor.id,
            plan.level,
            match,
            BonusPurpose.MATCHING_BONUS,
            depth=depth,
            description=f"{plan.name} matching bonus on position {ancestor.id}",
        )
        self._record(matching, result)

    async def pay_referral_bonus(
        self,
        position: Position,
        plan: PlanLevel,
        kind: EventKind | str = EventKind.NEW_ENTRY,
    ) -> BonusPosting | None:
        """Pay the plan's referral bonus to the position's sponsor.

        Only NEW_ENTRY placements earn it unless the plan also pays on
        re-entries. The sponsor must be ACTIVE, or a PENDING free member when
        ``free_referral_bonus`` is on.
        """
        if plan.referral_bonus <= ZERO or position.sponsor_id is None:
            return None
        if EventKind(kind) != EventKind.NEW_ENTRY and not plan.referral_bonus_on_reentry:
            return None

        sponsor = await self.session.get(Member, position.sponsor_id)
        if sponsor is None:
            return None
        eligible = sponsor.status == MemberStatus.ACTIVE.value or (
            self.config.free_referral_bonus
            and sponsor.status == MemberStatus.PENDING.value
            and sponsor.member_type == MemberType.FREE.value
        )
        if not eligible:
            logger.debug(
                "Referral bonus for position %s skipped, sponsor %s is %s",
                position.id,
                sponsor.username,
                sponsor.status,
            )
            return None

        posting = await self.ledger.apply_bonus(
            sponsor.id,
            position.id,
            plan.level,
            plan.referral_bonus,
            BonusPurpose.REFERRAL_BONUS,
            description=f"{plan.name} referral bonus",
        )
        self.effects.add_posting(posting)
        return posting

    def _record(self, posting: BonusPosting | None, result: PropagationResult) -> None:
        if posting is None:
            return
        result.postings.append(posting)
        self.effects.add_posting(posting)
