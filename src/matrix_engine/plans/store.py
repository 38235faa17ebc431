"""Read-only access to plan level configuration."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from matrix_engine.errors import ConfigNotFound
from matrix_engine.plans.types import PlanLevel


class ConfigStore:
    """Plan levels keyed by level number.

    Built once at startup; the engine only reads from it.
    """

    def __init__(self, plan_levels: Iterable[PlanLevel]):
        self._levels: dict[int, PlanLevel] = {}
        for plan in plan_levels:
            if plan.level in self._levels:
                raise ValueError(f"Duplicate plan level {plan.level}")
            self._levels[plan.level] = plan

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigStore:
        """Build from ``{"plan_levels": [...]}``."""
        return cls(PlanLevel.model_validate(item) for item in data.get("plan_levels", []))

    @classmethod
    def from_file(cls, path: str | Path) -> ConfigStore:
        """Load a JSON plan document."""
        with open(path, encoding="utf-8") as fh:
            return cls.from_dict(json.load(fh))

    def get_plan_level(self, level: int) -> PlanLevel:
        """Return the plan level, raising ConfigNotFound if missing."""
        plan = self._levels.get(level)
        if plan is None:
            raise ConfigNotFound(level)
        return plan

    def has_level(self, level: int) -> bool:
        return level in self._levels

    def levels(self) -> list[PlanLevel]:
        return [self._levels[key] for key in sorted(self._levels)]

    def validate(self) -> list[str]:
        """Check cross-level references.

        Returns a list of problems. Empty list = consistent.
        """
        issues: list[str] = []
        for plan in self.levels():
            for rule in plan.enabled_cross_entries():
                if rule.target_level not in self._levels:
                    issues.append(
                        f"Plan level {plan.level} cross entry targets "
                        f"unknown level {rule.target_level}"
                    )
        return issues
