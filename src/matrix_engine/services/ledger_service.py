"""Ledger Service - balance credits with an append-only audit trail.

Provides bonus crediting with:
- Reserve withholding (configurable percentage of every bonus)
- Invariant checks (total = paid + unpaid + reserve) on every mutation
- Append-only transaction log entries
- Disbursement outbox records for automatic withdrawals
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matrix_engine.config import EngineConfig
from matrix_engine.errors import LedgerInconsistency, OwnerNotFound
from matrix_engine.models import (
    BonusPurpose,
    LedgerAccount,
    Member,
    TransactionLogEntry,
    WithdrawalRecord,
    WithdrawalStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


@dataclass(frozen=True)
class ReserveSplit:
    """A bonus divided into its reserved and payable parts."""

    amount: Decimal
    reserve: Decimal
    payable: Decimal


def split_reserve(amount: Decimal, reserve_percent: Decimal) -> ReserveSplit:
    """Split ``amount`` into reserve and payable parts.

    The reserve is rounded half-up to the cent and the payable part is the
    remainder, so the two always add back to ``amount``.
    """
    amount = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    reserve = (amount * Decimal(reserve_percent) / Decimal("100")).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    payable = amount - reserve
    if reserve + payable != amount or reserve < ZERO or payable < ZERO:
        raise LedgerInconsistency(
            f"Reserve split of {amount} produced reserve {reserve} + payable {payable}"
        )
    return ReserveSplit(amount=amount, reserve=reserve, payable=payable)


@dataclass(frozen=True)
class BonusPosting:
    """Result of crediting one bonus.

    ``withdrawal_id`` is set when an automatic disbursement was queued; the
    caller dispatches it after the surrounding transaction commits.
    """

    entry_id: int
    user_id: int
    purpose: str
    amount: Decimal
    reserve_amount: Decimal
    payable_amount: Decimal
    withdrawal_id: int | None = None


class LedgerService:
    """Credits bonuses to member ledger accounts.

    Notes:
    - transaction_log is append-only; nothing here updates or deletes it.
    - Every balance change is followed by an invariant check; a failure raises
      LedgerInconsistency so the caller can abort instead of persisting it.
    """

    def __init__(self, session: AsyncSession, config: EngineConfig):
        self.session = session
        self.config = config

    async def get_account(self, user_id: int) -> LedgerAccount | None:
        return await self.session.get(LedgerAccount, user_id)

    async def get_or_create_account(self, user_id: int) -> LedgerAccount:
        """Get the member's ledger account, creating a zeroed one if missing."""
        account = await self.get_account(user_id)
        if account is None:
            account = LedgerAccount(
                user_id=user_id,
                total_earnings=ZERO,
                paid_earnings=ZERO,
                unpaid_earnings=ZERO,
                reserve_held=ZERO,
            )
            self.session.add(account)
            await self.session.flush()
        return account

    async def apply_bonus(
        self,
        user_id: int,
        position_id: int | None,
        plan_level: int,
        amount: Decimal,
        purpose: BonusPurpose | str,
        *,
        depth: int | None = None,
        description: str | None = None,
    ) -> BonusPosting | None:
        """Credit a bonus to a member.

        Args:
            user_id: Member receiving the bonus
            position_id: Position the bonus was earned on (audit reference)
            plan_level: Plan level the bonus belongs to
            amount: Non-negative bonus amount; zero (after cent rounding) is a no-op
            purpose: BonusPurpose of the credit
            depth: Relative depth that triggered the bonus, if any
            description: Free-text audit description

        Returns:
            BonusPosting, or None if ``amount`` is zero.
        """
        amount = Decimal(amount)
        if amount < ZERO:
            raise ValueError("Bonus amount cannot be negative")
        split = split_reserve(amount, self.config.reserve_percent)
        if split.amount == ZERO:
            return None

        member = await self.session.get(Member, user_id)
        if member is None:
            raise OwnerNotFound(user_id)

        account = await self.get_or_create_account(user_id)
        account.total_earnings += split.amount
        account.unpaid_earnings += split.payable
        account.reserve_held += split.reserve
        self.verify_account(account)

        purpose_value = BonusPurpose(purpose).value
        entry = TransactionLogEntry(
            user_id=user_id,
            position_id=position_id,
            plan_level=plan_level,
            amount=split.amount,
            reserve_amount=split.reserve,
            purpose=purpose_value,
            depth=depth,
            description=description,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()

        withdrawal_id = None
        if self.config.auto_withdraw and split.payable > ZERO:
            if member.wallet_address:
                withdrawal = WithdrawalRecord(
                    user_id=user_id,
                    transaction_id=entry.id,
                    amount=split.payable,
                    currency=self.config.currency,
                    address=member.wallet_address,
                    status=WithdrawalStatus.PENDING.value,
                    created_at=utcnow(),
                )
                self.session.add(withdrawal)
                await self.session.flush()
                withdrawal_id = withdrawal.id
            else:
                logger.warning(
                    "No wallet address for member %s, skipping auto-withdrawal",
                    member.username,
                )

        logger.debug(
            "Credited %s %s to member %s (reserve %s, position %s)",
            purpose_value,
            split.amount,
            user_id,
            split.reserve,
            position_id,
        )

        return BonusPosting(
            entry_id=entry.id,
            user_id=user_id,
            purpose=purpose_value,
            amount=split.amount,
            reserve_amount=split.reserve,
            payable_amount=split.payable,
            withdrawal_id=withdrawal_id,
        )

    async def complete_withdrawal(self, user_id: int, amount: Decimal) -> LedgerAccount:
        """Move a disbursed amount from unpaid to paid earnings.

        Raises LedgerInconsistency if the member's unpaid balance cannot
        cover ``amount``.
        """
        amount = Decimal(amount)
        if amount <= ZERO:
            raise ValueError("Withdrawal amount must be positive")

        account = await self.get_account(user_id)
        if account is None or account.unpaid_earnings < amount:
            raise LedgerInconsistency(
                f"Withdrawal of {amount} exceeds unpaid earnings for member {user_id}",
                user_id=user_id,
            )

        account.unpaid_earnings -= amount
        account.paid_earnings += amount
        self.verify_account(account)
        await self.session.flush()
        return account

    def verify_account(self, account: LedgerAccount) -> None:
        """Raise LedgerInconsistency unless total = paid + unpaid + reserve."""
        if not account.is_balanced:
            raise LedgerInconsistency(
                f"Ledger account {account.user_id} out of balance: total "
                f"{account.total_earnings} != paid {account.paid_earnings} + unpaid "
                f"{account.unpaid_earnings} + reserve {account.reserve_held}",
                user_id=account.user_id,
            )

    async def history(self, user_id: int) -> list[TransactionLogEntry]:
        """Transaction log for a member, oldest first."""
        result = await self.session.execute(
            select(TransactionLogEntry)
            .where(TransactionLogEntry.user_id == user_id)
            .order_by(TransactionLogEntry.id)
        )
        return list(result.scalars().all())
