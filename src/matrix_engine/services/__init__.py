"""Matrix engine services."""

from matrix_engine.services.cycle import CycleCompletionHandler
from matrix_engine.services.disbursement import DisbursementService, DispatchOutcome
from matrix_engine.services.effects import DeferredEffects, PendingNotification
from matrix_engine.services.enrollment_queue import EnrollmentQueue
from matrix_engine.services.ledger_service import (
    BonusPosting,
    LedgerService,
    ReserveSplit,
    split_reserve,
)
from matrix_engine.services.payout import PayoutEngine, PropagationResult
from matrix_engine.services.placement import PlacementEngine, PlacementMethod
from matrix_engine.services.position_state import PositionStateMachine
from matrix_engine.services.position_tree import PositionTree
from matrix_engine.services.processor import QueueProcessor, RunReport
from matrix_engine.services.run_lock import ProcessorRunLock

__all__ = [
    "BonusPosting",
    "CycleCompletionHandler",
    "DeferredEffects",
    "DisbursementService",
    "DispatchOutcome",
    "EnrollmentQueue",
    "LedgerService",
    "PayoutEngine",
    "PendingNotification",
    "PlacementEngine",
    "PlacementMethod",
    "PositionStateMachine",
    "PositionTree",
    "ProcessorRunLock",
    "PropagationResult",
    "QueueProcessor",
    "ReserveSplit",
    "RunReport",
    "split_reserve",
]
