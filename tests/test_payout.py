"""Tests for PayoutEngine - ancestor walk, payout modes and matching."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from matrix_engine.config import EngineConfig
from matrix_engine.errors import CapacityExceeded
from matrix_engine.models import (
    EventKind,
    MemberStatus,
    MemberType,
    PositionStatus,
    TransactionLogEntry,
)
from matrix_engine.plans import PayoutMode
from matrix_engine.services.effects import DeferredEffects
from matrix_engine.services.ledger_service import LedgerService
from matrix_engine.services.payout import PayoutEngine
from matrix_engine.services.placement import PlacementEngine

pytestmark = pytest.mark.asyncio

T0 = datetime(2024, 1, 1)


class Matrix:
    """Places members one at a time and runs the payout walk."""

    def __init__(self, session, config, plan):
        self.session = session
        self.config = config
        self.plan = plan
        self.effects = DeferredEffects()
        self.placement = PlacementEngine(session, config)
        self.payout = PayoutEngine(session, config, self.effects)
        self.tick = 0

    async def enter(self, owner, sponsor=None):
        self.tick += 1
        now = T0 + timedelta(seconds=self.tick)
        position = await self.placement.place(
            owner, self.plan, sponsor.id if sponsor is not None else None, now=now
        )
        result = await self.payout.propagate(position, self.plan, now=now)
        return position, result


async def balance(session, config, member):
    account = await LedgerService(session, config).get_account(member.id)
    return account.total_earnings if account is not None else Decimal("0")


class TestSlotCounters:
    """Test counter maintenance during the walk."""

    async def test_counts_each_descendant_once_per_depth(
        self, session, engine_config, test_data
    ):
        matrix = Matrix(session, engine_config, test_data.plan(width=2, depth=3))
        members = await test_data.members(session, 5)
        root, _ = await matrix.enter(members[0])
        p1, _ = await matrix.enter(members[1])
        await matrix.enter(members[2])
        await matrix.enter(members[3])
        result = (await matrix.enter(members[4]))[1]

        assert root.level1_count == 2
        assert root.level2_count == 2
        assert p1.level1_count == 2
        assert result.depth_reached == 2

    async def test_walk_bounded_by_plan_depth(self, session, engine_config, test_data):
        members = await test_data.members(session, 4)
        top = await test_data.position(session, members[0])
        middle = await test_data.position(session, members[1], parent=top)
        bottom = await test_data.position(session, members[2], parent=middle)
        leaf = await test_data.position(session, members[3], parent=bottom)
        engine = PayoutEngine(session, engine_config)

        result = await engine.propagate(leaf, test_data.plan(width=2, depth=2))

        assert result.depth_reached == 2
        assert bottom.level1_count == 1
        assert middle.level2_count == 1
        assert top.child_counts == [0] * 10

    async def test_capacity_exceeded(self, session, engine_config, test_data):
        parent_owner, owner = await test_data.members(session, 2)
        parent = await test_data.position(session, parent_owner, level1_count=2)
        child = await test_data.position(session, owner, parent=parent)
        engine = PayoutEngine(session, engine_config)

        with pytest.raises(CapacityExceeded) as exc_info:
            await engine.propagate(child, test_data.plan(width=2, depth=2))

        assert exc_info.value.position_id == parent.id
        assert exc_info.value.depth == 1
        assert exc_info.value.capacity == 2

    async def test_inactive_ancestor_counted_but_not_paid(
        self, session, engine_config, test_data
    ):
        top_owner, middle_owner, owner = await test_data.members(session, 3)
        top = await test_data.position(
            session, top_owner, level1_count=2, level2_count=3
        )
        top.status = PositionStatus.CANCELLED.value
        middle = await test_data.position(session, middle_owner, parent=top, level1_count=1)
        leaf = await test_data.position(session, owner, parent=middle)
        plan = test_data.plan(width=2, depth=2, matrix_bonus=Decimal("10.00"))
        engine = PayoutEngine(session, engine_config)

        result = await engine.propagate(leaf, plan)

        assert top.level2_count == 4
        assert middle.level1_count == 2
        assert result.cycled_position_ids == []
        assert result.postings == []
        assert top.status == "CANCELLED"
        assert top.cycle_count == 0
        entries = (await session.execute(select(TransactionLogEntry))).scalars().all()
        assert entries == []


class TestPayoutModes:
    """Test when each payout mode pays."""

    async def test_full_cycle_only_pays_once_on_cycle(
        self, session, engine_config, test_data
    ):
        plan = test_data.plan(matrix_bonus=Decimal("10.00"))
        matrix = Matrix(session, engine_config, plan)
        members = await test_data.members(session, 7)
        root, _ = await matrix.enter(members[0])

        results = [(await matrix.enter(m))[1] for m in members[1:]]

        assert [len(r.postings) for r in results] == [0, 0, 0, 0, 0, 1]
        assert results[-1].cycled_position_ids == [root.id]
        assert root.status == "COMPLETED"
        assert root.cycle_count == 1
        assert root.cycled_at is not None
        assert root.total_earned == Decimal("10.00")
        assert await balance(session, engine_config, members[0]) == Decimal("10.00")
        posting = results[-1].postings[0]
        assert posting.purpose == "MATRIX_BONUS"
        assert posting.user_id == members[0].id

    async def test_per_level_pays_every_step(self, session, engine_config, test_data):
        plan = test_data.plan(
            payout_mode=PayoutMode.PER_LEVEL,
            per_level_bonus=(Decimal("1.00"), Decimal("0.50")),
        )
        matrix = Matrix(session, engine_config, plan)
        members = await test_data.members(session, 4)
        root, _ = await matrix.enter(members[0])
        p1, _ = await matrix.enter(members[1])
        await matrix.enter(members[2])

        _, result = await matrix.enter(members[3])

        assert [(p.user_id, p.amount) for p in result.postings] == [
            (members[1].id, Decimal("1.00")),
            (members[0].id, Decimal("0.50")),
        ]
        assert all(p.purpose == "LEVEL_BONUS" for p in result.postings)
        assert root.total_earned == Decimal("2.50")
        assert p1.total_earned == Decimal("1.00")

    async def test_cycle_on_level_fill(self, session, engine_config, test_data):
        plan = test_data.plan(
            payout_mode=PayoutMode.CYCLE_ON_LEVEL_FILL,
            cycle_bonus=(Decimal("2.00"), Decimal("5.00")),
        )
        matrix = Matrix(session, engine_config, plan)
        members = await test_data.members(session, 7)
        root, _ = await matrix.enter(members[0])

        results = [(await matrix.enter(m))[1] for m in members[1:]]

        # root fills depth 1 on the 2nd entry, depth 2 on the 6th; p1 and p2
        # fill their depth 1 on the 4th and 6th
        paid = [[(p.user_id, p.amount) for p in r.postings] for r in results]
        assert paid[0] == []
        assert paid[1] == [(members[0].id, Decimal("2.00"))]
        assert paid[3] == [(members[1].id, Decimal("2.00"))]
        assert paid[5] == [
            (members[2].id, Decimal("2.00")),
            (members[0].id, Decimal("5.00")),
        ]
        assert root.status == "COMPLETED"
        assert await balance(session, engine_config, members[0]) == Decimal("7.00")

    async def test_cycle_fires_without_bonus(self, session, engine_config, test_data):
        matrix = Matrix(session, engine_config, test_data.plan(width=1, depth=1))
        owner, child = await test_data.members(session, 2)
        root, _ = await matrix.enter(owner)

        _, result = await matrix.enter(child)

        assert result.cycled_position_ids == [root.id]
        assert result.postings == []


class TestMatchingBonus:
    """Test matching bonus eligibility."""

    async def test_suppressed_without_sponsor_position(
        self, session, engine_config, test_data
    ):
        sponsor = await test_data.member(session)
        plan = test_data.plan(
            width=1,
            depth=1,
            matrix_bonus=Decimal("10"),
            matrix_matching_bonus=Decimal("3"),
        )
        matrix = Matrix(session, engine_config, plan)
        owner, child = await test_data.members(session, 2)
        await matrix.enter(owner, sponsor=sponsor)

        _, result = await matrix.enter(child)

        assert [p.purpose for p in result.postings] == ["MATRIX_BONUS"]
        assert await balance(session, engine_config, sponsor) == Decimal("0")

    async def test_non_matrix_match_override(self, session, test_data):
        config = EngineConfig(non_matrix_match=True)
        sponsor = await test_data.member(session)
        plan = test_data.plan(
            width=1,
            depth=1,
            matrix_bonus=Decimal("10"),
            matrix_matching_bonus=Decimal("3"),
        )
        matrix = Matrix(session, config, plan)
        owner, child = await test_data.members(session, 2)
        await matrix.enter(owner, sponsor=sponsor)

        _, result = await matrix.enter(child)

        assert [(p.purpose, p.user_id) for p in result.postings] == [
            ("MATRIX_BONUS", owner.id),
            ("MATCHING_BONUS", sponsor.id),
        ]
        assert await balance(session, config, sponsor) == Decimal("3.00")

    async def test_paid_to_sponsor_with_position(self, session, engine_config, test_data):
        plan = test_data.plan(
            payout_mode=PayoutMode.PER_LEVEL,
            per_level_bonus=(Decimal("1.00"), Decimal("0.50")),
            matching_bonus=(Decimal("0.25"),),
        )
        matrix = Matrix(session, engine_config, plan)
        sponsor, owner, child = await test_data.members(session, 3)
        await matrix.enter(sponsor)
        await matrix.enter(owner, sponsor=sponsor)

        _, result = await matrix.enter(child, sponsor=owner)

        assert [(p.purpose, p.user_id, p.amount) for p in result.postings] == [
            ("LEVEL_BONUS", owner.id, Decimal("1.00")),
            ("MATCHING_BONUS", sponsor.id, Decimal("0.25")),
            ("LEVEL_BONUS", sponsor.id, Decimal("0.50")),
        ]


class TestReferralBonus:
    """Test the sponsor's referral bonus on placement."""

    async def _placed(self, session, config, test_data, sponsor, **plan_fields):
        plan = test_data.plan(referral_bonus=Decimal("5.00"), **plan_fields)
        owner = await test_data.member(session, sponsor=sponsor)
        position = await PlacementEngine(session, config).place(owner, plan, sponsor.id)
        return PayoutEngine(session, config), position, plan

    async def test_paid_to_active_sponsor(self, session, engine_config, test_data):
        sponsor = await test_data.member(session)
        engine, position, plan = await self._placed(session, engine_config, test_data, sponsor)

        posting = await engine.pay_referral_bonus(position, plan, EventKind.NEW_ENTRY)

        assert posting.purpose == "REFERRAL_BONUS"
        assert posting.user_id == sponsor.id
        assert posting.amount == Decimal("5.00")
        assert engine.effects.postings == [posting]

    async def test_not_paid_to_inactive_sponsor(self, session, engine_config, test_data):
        sponsor = await test_data.member(
            session, status=MemberStatus.PENDING, member_type=MemberType.FREE
        )
        engine, position, plan = await self._placed(session, engine_config, test_data, sponsor)

        assert await engine.pay_referral_bonus(position, plan) is None

    async def test_free_pending_sponsor_with_override(self, session, test_data):
        config = EngineConfig(free_referral_bonus=True)
        sponsor = await test_data.member(
            session, status=MemberStatus.PENDING, member_type=MemberType.FREE
        )
        engine, position, plan = await self._placed(session, config, test_data, sponsor)

        posting = await engine.pay_referral_bonus(position, plan)

        assert posting is not None

    async def test_reentry_not_paid_by_default(self, session, engine_config, test_data):
        sponsor = await test_data.member(session)
        engine, position, plan = await self._placed(session, engine_config, test_data, sponsor)

        assert await engine.pay_referral_bonus(position, plan, EventKind.RE_ENTRY) is None

    async def test_reentry_paid_when_enabled(self, session, engine_config, test_data):
        sponsor = await test_data.member(session)
        engine, position, plan = await self._placed(
            session, engine_config, test_data, sponsor, referral_bonus_on_reentry=True
        )

        posting = await engine.pay_referral_bonus(position, plan, EventKind.CROSS_ENTRY)

        assert posting is not None
