"""Member and ledger account models."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from matrix_engine.models.base import Base, TimestampMixin


class MemberStatus(str, Enum):
    """Member account status values."""

    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"


class MemberType(str, Enum):
    """Paid members versus free sign-ups."""

    PAID = "PAID"
    FREE = "FREE"


class Member(Base, TimestampMixin):
    """A member who owns positions and receives bonuses.

    ``sponsor_id`` is the referral chain (who introduced whom). It is
    independent of where the member's positions sit in any tree.
    """

    __tablename__ = "member"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=MemberStatus.PENDING.value
    )
    member_type: Mapped[str] = mapped_column(
        String(8), nullable=False, default=MemberType.PAID.value
    )
    sponsor_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("member.id"), nullable=True
    )
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    text_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    banner_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'PENDING', 'SUSPENDED')", name="member_status_ck"
        ),
        CheckConstraint("member_type IN ('PAID', 'FREE')", name="member_type_ck"),
    )


class LedgerAccount(Base):
    """Per-member earnings balances.

    Invariant: total_earnings = paid_earnings + unpaid_earnings + reserve_held.
    Only LedgerService mutates these fields.
    """

    __tablename__ = "ledger_account"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("member.id"), primary_key=True
    )
    total_earnings: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )
    paid_earnings: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )
    unpaid_earnings: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )
    reserve_held: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )

    @property
    def is_balanced(self) -> bool:
        return self.total_earnings == (
            self.paid_earnings + self.unpaid_earnings + self.reserve_held
        )
