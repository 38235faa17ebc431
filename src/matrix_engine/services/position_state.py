"""Position status state machine with transition validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from matrix_engine.errors import InvalidTransitionError
from matrix_engine.models.matrix import PositionStatus

if TYPE_CHECKING:
    from matrix_engine.models import Position


class PositionStateMachine:
    """State machine for position status transitions.

    Allowed transitions:
    - ACTIVE → COMPLETED (cycle completion, exactly once)
    - ACTIVE → CANCELLED (administrative)

    COMPLETED and CANCELLED are terminal. Positions are never deleted.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PositionStatus.ACTIVE: [PositionStatus.COMPLETED, PositionStatus.CANCELLED],
        PositionStatus.COMPLETED: [],  # Terminal state
        PositionStatus.CANCELLED: [],  # Terminal state
    }

    # Statuses that can receive new children and bonuses
    ACCEPTS_PLACEMENT = {PositionStatus.ACTIVE}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def accepts_placement(cls, status: str) -> bool:
        return status in cls.ACCEPTS_PLACEMENT

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status, [])

    @classmethod
    def transition(cls, position: Position, to_status: str) -> None:
        """Apply a validated transition to ``position``."""
        cls.validate_transition(position.status, to_status)
        position.status = PositionStatus(to_status).value
