"""Exceptions raised by the matrix engine."""

from __future__ import annotations

from decimal import Decimal


class MatrixEngineError(Exception):
    """Base class for engine errors."""


class ConfigNotFound(MatrixEngineError):
    """Raised when a plan level has no configuration."""

    def __init__(self, level: int):
        self.level = level
        super().__init__(f"Plan level {level} not found")


class OwnerNotFound(MatrixEngineError):
    """Raised when an enrollment event references an unknown member."""

    def __init__(self, owner_id: int):
        self.owner_id = owner_id
        super().__init__(f"Member {owner_id} not found")


class NoAvailableSlot(MatrixEngineError):
    """Raised when no position at a plan level has a free child slot."""

    def __init__(self, plan_level: int):
        self.plan_level = plan_level
        super().__init__(f"No position with a free slot at plan level {plan_level}")


class CapacityExceeded(MatrixEngineError):
    """Raised when a slot counter would exceed width ** depth."""

    def __init__(self, position_id: int, depth: int, count: int, capacity: int):
        self.position_id = position_id
        self.depth = depth
        self.count = count
        self.capacity = capacity
        super().__init__(
            f"Position {position_id} depth {depth} counter {count} "
            f"exceeds capacity {capacity}"
        )


class LedgerInconsistency(MatrixEngineError):
    """Raised when a ledger invariant check fails.

    This aborts the whole run rather than continuing with corrupt balances.
    """

    def __init__(self, message: str, user_id: int | None = None):
        self.user_id = user_id
        super().__init__(message)


class DispatcherError(MatrixEngineError):
    """Raised by withdrawal dispatchers when a disbursement cannot be sent."""

    def __init__(self, message: str, amount: Decimal | None = None):
        self.amount = amount
        super().__init__(message)


class InvalidTransitionError(MatrixEngineError):
    """Raised when an invalid position status transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
