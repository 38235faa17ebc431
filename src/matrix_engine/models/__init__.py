"""ORM models."""

from matrix_engine.models.base import Base, TimestampMixin, utcnow
from matrix_engine.models.ledger import (
    BonusPurpose,
    TransactionLogEntry,
    WithdrawalRecord,
    WithdrawalStatus,
)
from matrix_engine.models.matrix import (
    MAX_DEPTH,
    EnrollmentEvent,
    EventKind,
    EventStatus,
    Position,
    PositionStatus,
    ProcessorRunState,
)
from matrix_engine.models.member import LedgerAccount, Member, MemberStatus, MemberType

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "BonusPurpose",
    "TransactionLogEntry",
    "WithdrawalRecord",
    "WithdrawalStatus",
    "MAX_DEPTH",
    "EnrollmentEvent",
    "EventKind",
    "EventStatus",
    "Position",
    "PositionStatus",
    "ProcessorRunState",
    "LedgerAccount",
    "Member",
    "MemberStatus",
    "MemberType",
]
