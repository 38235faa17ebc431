"""Matrix models: positions, the enrollment queue and processor run state.

Covers:
- Positions (tree nodes per plan level, with per-depth slot counters)
- Enrollment events (the pending placement queue)
- Processor run state (single-row run guard)
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
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

MAX_DEPTH = 10


class PositionStatus(str, Enum):
    """Position status values."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class EventKind(str, Enum):
    """How an enrollment event came to be queued."""

    NEW_ENTRY = "NEW_ENTRY"
    RE_ENTRY = "RE_ENTRY"
    CROSS_ENTRY = "CROSS_ENTRY"


class EventStatus(str, Enum):
    """Queue status of an enrollment event."""

    PENDING = "PENDING"
    PARKED = "PARKED"


class Position(Base, TimestampMixin):
    """One node in a plan level's tree.

    ``parent_id`` is the tree attachment point. ``sponsor_id`` is the member
    credited as the original referrer and is used for matching bonuses; the two
    are independent.

    ``level{d}_count`` is the number of descendants realized at relative depth
    ``d``. It never exceeds ``width ** d`` for the plan level.
    """

    __tablename__ = "position"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("member.id"), nullable=False
    )
    plan_level: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("position.id"), nullable=True
    )
    sponsor_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("member.id"), nullable=True
    )

    level1_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level2_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level3_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level4_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level5_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level6_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level7_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level8_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level9_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level10_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_earned: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, default=Decimal("0")
    )
    cycle_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PositionStatus.ACTIVE.value
    )
    cycled_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'COMPLETED', 'CANCELLED')",
            name="position_status_ck",
        ),
        Index("position_by_level_status", "plan_level", "status"),
        Index("position_by_parent", "parent_id"),
        Index("position_by_owner_level", "owner_id", "plan_level"),
    )

    def child_count(self, depth: int) -> int:
        """Slot counter at relative depth ``depth`` (1-based)."""
        _check_depth(depth)
        return getattr(self, f"level{depth}_count") or 0

    def set_child_count(self, depth: int, value: int) -> None:
        _check_depth(depth)
        setattr(self, f"level{depth}_count", value)

    @property
    def child_counts(self) -> list[int]:
        return [self.child_count(d) for d in range(1, MAX_DEPTH + 1)]


def _check_depth(depth: int) -> None:
    if not 1 <= depth <= MAX_DEPTH:
        raise ValueError(f"depth must be between 1 and {MAX_DEPTH}, got {depth}")


class EnrollmentEvent(Base, TimestampMixin):
    """A pending placement waiting in the queue.

    Deleted exactly once, inside the same transaction that applies it.
    """

    __tablename__ = "enrollment_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("member.id"), nullable=False
    )
    plan_level: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(16), nullable=False, default=EventKind.NEW_ENTRY.value
    )
    sponsor_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=EventStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('NEW_ENTRY', 'RE_ENTRY', 'CROSS_ENTRY')",
            name="enrollment_event_kind_ck",
        ),
        CheckConstraint(
            "status IN ('PENDING', 'PARKED')", name="enrollment_event_status_ck"
        ),
        Index("enrollment_event_due", "status", "scheduled_at", "id"),
        Index("enrollment_event_by_owner_level", "owner_id", "plan_level"),
    )


class ProcessorRunState(Base):
    """Singleton row guarding against overlapping batch runs.

    ``active`` is only ever flipped by a compare-and-swap UPDATE.
    """

    __tablename__ = "processor_run_state"

    SINGLETON_ID = 1

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_processed_event_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
