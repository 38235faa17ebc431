"""Plan level configuration."""

from matrix_engine.plans.store import ConfigStore
from matrix_engine.plans.types import (
    CreditGrant,
    CrossEntryRule,
    MatrixType,
    PayoutMode,
    PlanLevel,
)

__all__ = [
    "ConfigStore",
    "CreditGrant",
    "CrossEntryRule",
    "MatrixType",
    "PayoutMode",
    "PlanLevel",
]
