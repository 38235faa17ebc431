"""Cycle completion side effects."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.config import EngineConfig
from matrix_engine.errors import OwnerNotFound
from matrix_engine.models import EnrollmentEvent, EventKind, Member, Position, PositionStatus, utcnow
from matrix_engine.notifications import CYCLE_COMPLETED, DOWNLINE_CYCLED
from matrix_engine.plans import PlanLevel
from matrix_engine.services.effects import DeferredEffects
from matrix_engine.services.enrollment_queue import EnrollmentQueue
from matrix_engine.services.position_state import PositionStateMachine
from matrix_engine.services.position_tree import PositionTree

logger = logging.getLogger(__name__)


class CycleCompletionHandler:
    """Runs when a position's subtree is full at the plan's maximum depth.

    Steps:
    1) ACTIVE → COMPLETED, stamp cycled_at, bump cycle_count
    2) Grant cycle credits to the owner
    3) Queue notifications (owner, and sponsor if matching-eligible)
    4) Queue re-entries and spaced cross-plan entries
    """

    def __init__(
        self,
        session: AsyncSession,
        config: EngineConfig,
        effects: DeferredEffects | None = None,
    ):
        self.session = session
        self.config = config
        self.effects = effects if effects is not None else DeferredEffects()
        self.queue = EnrollmentQueue(session)
        self.tree = PositionTree(session)

    async def on_cycle_complete(
        self,
        position: Position,
        plan: PlanLevel,
        now: datetime | None = None,
    ) -> list[EnrollmentEvent]:
        """Complete ``position`` and queue its follow-up entries.

        Returns the enrollment events created.
        """
        now = now or utcnow()

        PositionStateMachine.transition(position, PositionStatus.COMPLETED)
        position.cycled_at = now
        position.cycle_count += 1

        owner = await self.session.get(Member, position.owner_id)
        if owner is None:
            raise OwnerNotFound(position.owner_id)
        owner.text_credits += plan.cycle_credits.text_credits
        owner.banner_credits += plan.cycle_credits.banner_credits
        await self.session.flush()

        logger.info(
            "Member %s position %s has cycled level %s (%s)",
            owner.username,
            position.id,
            plan.level,
            plan.name,
        )

        if plan.notify_on_cycle:
            self.effects.notify(
                owner.id,
                CYCLE_COMPLETED,
                position_id=position.id,
                plan_level=plan.level,
                plan_name=plan.name,
            )
        if plan.notify_sponsor_on_cycle and await self.tree.qualifies_for_matching(
            position.sponsor_id, plan.level, self.config.non_matrix_match
        ):
            self.effects.notify(
                position.sponsor_id,
                DOWNLINE_CYCLED,
                position_id=position.id,
                plan_level=plan.level,
                plan_name=plan.name,
                downline_username=owner.username,
            )

        if owner.username in self.config.reentry_exempt_usernames:
            return []

        events: list[EnrollmentEvent] = []
        for _ in range(plan.reentry_count):
            events.append(
                await self.queue.enqueue(
                    owner.id, plan.level, kind=EventKind.RE_ENTRY, scheduled_at=now
                )
            )

        for rule in plan.enabled_cross_entries():
            for _ in range(rule.count):
                events.append(
                    await self.queue.schedule_cross_entry(
                        owner.id,
                        rule.target_level,
                        now=now,
                        spacing=self.config.cross_entry_spacing,
                    )
                )

        if events:
            logger.info(
                "Queued %d follow-up entries for member %s", len(events), owner.username
            )
        return events
