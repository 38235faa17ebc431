"""Tests for LedgerService - bonus credits and the member balance invariant.

Tests verify:
1. Reserve split always adds back to the bonus
2. Bonus credits update balances and append a log entry
3. Auto-withdrawal outbox records
4. Withdrawal completion never drives unpaid negative
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from matrix_engine.config import EngineConfig
from matrix_engine.errors import LedgerInconsistency, OwnerNotFound
from matrix_engine.models import BonusPurpose, TransactionLogEntry, WithdrawalRecord
from matrix_engine.services.ledger_service import LedgerService, split_reserve

pytestmark = pytest.mark.asyncio


class TestReserveSplit:
    """Test reserve withholding arithmetic."""

    @pytest.mark.parametrize(
        "amount,percent,reserve,payable",
        [
            ("10.00", "0", "0.00", "10.00"),
            ("10.00", "10", "1.00", "9.00"),
            ("0.05", "10", "0.01", "0.04"),
            ("3.33", "33.3", "1.11", "2.22"),
            ("1.00", "100", "1.00", "0.00"),
        ],
    )
    async def test_split(self, amount, percent, reserve, payable):
        split = split_reserve(Decimal(amount), Decimal(percent))

        assert split.reserve == Decimal(reserve)
        assert split.payable == Decimal(payable)
        assert split.reserve + split.payable == split.amount

    async def test_amount_rounded_to_cent(self):
        split = split_reserve(Decimal("2.005"), Decimal("0"))

        assert split.amount == Decimal("2.01")


class TestApplyBonus:
    """Test bonus crediting."""

    async def test_credit_updates_account_and_log(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)

        posting = await ledger.apply_bonus(
            member.id, None, 1, Decimal("25.00"), BonusPurpose.MATRIX_BONUS, depth=2
        )

        assert posting is not None
        assert posting.amount == Decimal("25.00")
        assert posting.purpose == "MATRIX_BONUS"
        assert posting.withdrawal_id is None

        account = await ledger.get_account(member.id)
        assert account.total_earnings == Decimal("25.00")
        assert account.unpaid_earnings == Decimal("25.00")
        assert account.paid_earnings == Decimal("0")
        assert account.is_balanced

        history = await ledger.history(member.id)
        assert len(history) == 1
        assert history[0].depth == 2
        assert history[0].plan_level == 1

    async def test_reserve_withheld(self, session, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, EngineConfig(reserve_percent=Decimal("20")))

        posting = await ledger.apply_bonus(
            member.id, None, 1, Decimal("50.00"), BonusPurpose.LEVEL_BONUS
        )

        assert posting.reserve_amount == Decimal("10.00")
        assert posting.payable_amount == Decimal("40.00")
        account = await ledger.get_account(member.id)
        assert account.reserve_held == Decimal("10.00")
        assert account.unpaid_earnings == Decimal("40.00")
        assert account.total_earnings == Decimal("50.00")

    async def test_zero_amount_is_noop(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)

        posting = await ledger.apply_bonus(
            member.id, None, 1, Decimal("0"), BonusPurpose.LEVEL_BONUS
        )

        assert posting is None
        assert await ledger.get_account(member.id) is None
        count = await session.scalar(select(func.count()).select_from(TransactionLogEntry))
        assert count == 0

    async def test_negative_amount_rejected(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)

        with pytest.raises(ValueError):
            await ledger.apply_bonus(
                member.id, None, 1, Decimal("-1"), BonusPurpose.LEVEL_BONUS
            )

    async def test_unknown_member(self, session, engine_config):
        ledger = LedgerService(session, engine_config)

        with pytest.raises(OwnerNotFound):
            await ledger.apply_bonus(999, None, 1, Decimal("5"), BonusPurpose.LEVEL_BONUS)

    async def test_auto_withdraw_queues_payable_amount(self, session, test_data):
        member = await test_data.member(session, wallet_address="TAddr1")
        config = EngineConfig(auto_withdraw=True, reserve_percent=Decimal("10"))
        ledger = LedgerService(session, config)

        posting = await ledger.apply_bonus(
            member.id, None, 1, Decimal("30.00"), BonusPurpose.CYCLE_BONUS
        )

        assert posting.withdrawal_id is not None
        withdrawal = await session.get(WithdrawalRecord, posting.withdrawal_id)
        assert withdrawal.amount == Decimal("27.00")
        assert withdrawal.address == "TAddr1"
        assert withdrawal.currency == "TRX"
        assert withdrawal.status == "PENDING"
        assert withdrawal.transaction_id == posting.entry_id

    async def test_auto_withdraw_without_wallet(self, session, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, EngineConfig(auto_withdraw=True))

        posting = await ledger.apply_bonus(
            member.id, None, 1, Decimal("30.00"), BonusPurpose.CYCLE_BONUS
        )

        assert posting.withdrawal_id is None
        count = await session.scalar(select(func.count()).select_from(WithdrawalRecord))
        assert count == 0

    async def test_balances_accumulate(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)

        for amount in ("1.10", "2.20", "3.30"):
            await ledger.apply_bonus(
                member.id, None, 1, Decimal(amount), BonusPurpose.LEVEL_BONUS
            )

        account = await ledger.get_account(member.id)
        assert account.total_earnings == Decimal("6.60")
        assert len(await ledger.history(member.id)) == 3


class TestCompleteWithdrawal:
    """Test unpaid → paid moves."""

    async def test_moves_unpaid_to_paid(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)
        await ledger.apply_bonus(member.id, None, 1, Decimal("20"), BonusPurpose.LEVEL_BONUS)

        account = await ledger.complete_withdrawal(member.id, Decimal("15"))

        assert account.unpaid_earnings == Decimal("5.00")
        assert account.paid_earnings == Decimal("15.00")
        assert account.is_balanced

    async def test_refuses_overdraw(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)
        await ledger.apply_bonus(member.id, None, 1, Decimal("5"), BonusPurpose.LEVEL_BONUS)

        with pytest.raises(LedgerInconsistency) as exc_info:
            await ledger.complete_withdrawal(member.id, Decimal("5.01"))

        assert exc_info.value.user_id == member.id

    async def test_verify_account_detects_drift(self, session, engine_config, test_data):
        member = await test_data.member(session)
        ledger = LedgerService(session, engine_config)
        await ledger.apply_bonus(member.id, None, 1, Decimal("5"), BonusPurpose.LEVEL_BONUS)
        account = await ledger.get_account(member.id)

        account.unpaid_earnings += Decimal("1")

        with pytest.raises(LedgerInconsistency):
            ledger.verify_account(account)
