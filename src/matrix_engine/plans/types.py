"""Plan level configuration types.

A plan level is one compensation tier with its own tree, width, depth and
bonus tables. Plan levels are created at plan setup and are read-only while
the engine runs (frozen models).
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from matrix_engine.models.matrix import MAX_DEPTH

MAX_CROSS_ENTRIES = 5


class PayoutMode(str, Enum):
    """When positions are paid during the ancestor walk."""

    PER_LEVEL = "PER_LEVEL"
    CYCLE_ON_LEVEL_FILL = "CYCLE_ON_LEVEL_FILL"
    ON_FULL_CYCLE_ONLY = "ON_FULL_CYCLE_ONLY"


class MatrixType(str, Enum):
    """FORCED places under the sponsor with spillover; UNFORCED fills globally."""

    FORCED = "FORCED"
    UNFORCED = "UNFORCED"


class CreditGrant(BaseModel):
    """Advertising credits granted on entry or on cycle completion."""

    model_config = ConfigDict(frozen=True)

    text_credits: int = Field(default=0, ge=0)
    banner_credits: int = Field(default=0, ge=0)

    @property
    def is_empty(self) -> bool:
        return self.text_credits == 0 and self.banner_credits == 0


class CrossEntryRule(BaseModel):
    """Entries into another plan level granted when a position cycles."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    count: int = Field(default=0, ge=0)
    target_level: int | None = None

    @model_validator(mode="after")
    def _target_required_when_enabled(self) -> CrossEntryRule:
        if self.enabled and self.target_level is None:
            raise ValueError("target_level is required for an enabled cross entry")
        return self


class PlanLevel(BaseModel):
    """Immutable parameters of one plan level.

    Bonus tables are indexed by relative depth starting at 1; depths beyond
    the end of a table pay nothing.
    """

    model_config = ConfigDict(frozen=True)

    level: int = Field(ge=1)
    name: str = ""
    matrix_type: MatrixType = MatrixType.FORCED
    width: int = Field(ge=1)
    depth: int = Field(ge=1, le=MAX_DEPTH)
    payout_mode: PayoutMode = PayoutMode.ON_FULL_CYCLE_ONLY

    referral_bonus: Decimal = Field(default=Decimal("0"), ge=0)
    referral_bonus_on_reentry: bool = False
    per_level_bonus: tuple[Decimal, ...] = ()
    matching_bonus: tuple[Decimal, ...] = ()
    cycle_bonus: tuple[Decimal, ...] = ()
    cycle_matching_bonus: tuple[Decimal, ...] = ()
    matrix_bonus: Decimal = Field(default=Decimal("0"), ge=0)
    matrix_matching_bonus: Decimal = Field(default=Decimal("0"), ge=0)

    entry_credits: CreditGrant = Field(default_factory=CreditGrant)
    cycle_credits: CreditGrant = Field(default_factory=CreditGrant)
    reentry_count: int = Field(default=0, ge=0)
    cross_entries: tuple[CrossEntryRule, ...] = Field(
        default=(), max_length=MAX_CROSS_ENTRIES
    )

    notify_on_entry: bool = False
    notify_on_cycle: bool = False
    notify_sponsor_on_cycle: bool = False

    @field_validator(
        "per_level_bonus", "matching_bonus", "cycle_bonus", "cycle_matching_bonus"
    )
    @classmethod
    def _check_bonus_table(cls, table: tuple[Decimal, ...]) -> tuple[Decimal, ...]:
        if len(table) > MAX_DEPTH:
            raise ValueError(f"bonus tables hold at most {MAX_DEPTH} entries")
        if any(amount < 0 for amount in table):
            raise ValueError("bonus amounts cannot be negative")
        return table

    def capacity(self, depth: int) -> int:
        """Number of slots at relative depth ``depth`` (width ** depth)."""
        return self.width**depth

    @property
    def cycle_capacity(self) -> int:
        return self.capacity(self.depth)

    @staticmethod
    def bonus_at(table: tuple[Decimal, ...], depth: int) -> Decimal:
        """Amount at 1-based ``depth``, zero past the end of the table."""
        if depth < 1 or depth > len(table):
            return Decimal("0")
        return table[depth - 1]

    def enabled_cross_entries(self) -> list[CrossEntryRule]:
        return [
            rule
            for rule in self.cross_entries
            if rule.enabled and rule.count > 0 and rule.target_level is not None
        ]
