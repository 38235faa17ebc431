"""Transaction log and withdrawal outbox models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from matrix_engine.models.base import Base, TimestampMixin


class BonusPurpose(str, Enum):
    """Why a ledger credit was made."""

    REFERRAL_BONUS = "REFERRAL_BONUS"
    LEVEL_BONUS = "LEVEL_BONUS"
    CYCLE_BONUS = "CYCLE_BONUS"
    MATRIX_BONUS = "MATRIX_BONUS"
    MATCHING_BONUS = "MATCHING_BONUS"


class WithdrawalStatus(str, Enum):
    """Disbursement outbox status values."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class TransactionLogEntry(Base, TimestampMixin):
    """Append-only audit record of one ledger credit.

    CRITICAL: rows are never updated or deleted.
    """

    __tablename__ = "transaction_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("member.id"), nullable=False
    )
    position_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("position.id"), nullable=True
    )
    plan_level: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    reserve_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    depth: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="transaction_log_amount_ck"),
        CheckConstraint(
            """purpose IN (
                'REFERRAL_BONUS',
                'LEVEL_BONUS',
                'CYCLE_BONUS',
                'MATRIX_BONUS',
                'MATCHING_BONUS'
            )""",
            name="transaction_log_purpose_ck",
        ),
        Index("transaction_log_by_user", "user_id"),
    )


class WithdrawalRecord(Base, TimestampMixin):
    """Automatic disbursement queued by a ledger credit.

    Written in the same transaction as the credit; sent to the dispatcher only
    after that transaction commits.
    """

    __tablename__ = "withdrawal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("member.id"), nullable=False
    )
    transaction_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("transaction_log.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=WithdrawalStatus.PENDING.value
    )
    external_tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="withdrawal_amount_ck"),
        CheckConstraint(
            "status IN ('PENDING', 'SENT', 'FAILED')", name="withdrawal_status_ck"
        ),
        Index("withdrawal_by_status", "status"),
    )
