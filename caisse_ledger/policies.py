"""
Family Policy Module

Per-family business tables: bonus percentages keyed "M{n}" and the
day-4-to-12 penalty rule. They are immutable inputs handed to the
calculators at call time, looked up through a PolicyProvider.
"""

import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .contracts import ContractFamily
from .errors import NotFoundError

_MONTH_KEY = re.compile(r"^M([1-9][0-9]*)$")


class PenaltyStep(BaseModel):
    """Per-day rate applying to delays within [from_day, to_day]"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_day: int = Field(alias="from", ge=1)
    to_day: int = Field(alias="to", ge=1)
    rate: Decimal = Field(ge=0)  # percent per day

    @model_validator(mode="after")
    def _check_range(self) -> "PenaltyStep":
        if self.to_day < self.from_day:
            raise ValueError(f"Penalty step ends before it starts: {self.from_day}..{self.to_day}")
        return self


class PenaltyRules(BaseModel):
    """
    Day 4 to 12 penalty rule. Either a flat ``per_day`` percentage or a list
    of non-overlapping ``steps``; steps win when both are given.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    per_day: Decimal = Field(default=Decimal('0'), alias="perDay", ge=0)
    steps: List[PenaltyStep] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def _steps_do_not_overlap(cls, steps: List[PenaltyStep]) -> List[PenaltyStep]:
        ordered = sorted(steps, key=lambda s: s.from_day)
        for previous, current in zip(ordered, ordered[1:]):
            if current.from_day <= previous.to_day:
                raise ValueError(
                    f"Penalty steps overlap: {previous.from_day}..{previous.to_day} "
                    f"and {current.from_day}..{current.to_day}"
                )
        return ordered

    def per_day_rate(self, days_late: int) -> Decimal:
        """Per-day percentage applicable for a given delay (0 if no step matches)"""
        if self.steps:
            for step in self.steps:
                if step.from_day <= days_late <= step.to_day:
                    return step.rate
            return Decimal('0')
        return self.per_day

    @classmethod
    def from_settings(cls, data: Mapping) -> "PenaltyRules":
        """Build from a settings document shaped ``{"day4To12": {...}}``"""
        return cls.model_validate(dict(data.get("day4To12") or {}))


class BonusTable(BaseModel):
    """Bonus percentages keyed by calendar month label ("M4", "M7", ...)"""
    model_config = ConfigDict(frozen=True)

    percentages: Dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("percentages")
    @classmethod
    def _validate_keys(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        for key, percent in value.items():
            if not _MONTH_KEY.match(key):
                raise ValueError(f"Bonus table key must look like 'M<n>', got {key!r}")
            if percent < 0:
                raise ValueError(f"Bonus percentage for {key} must be non-negative")
        return value

    def percent_for_month(self, month_number: int) -> Optional[Decimal]:
        """Configured percent for calendar month ``month_number`` (1-based), or None"""
        return self.percentages.get(f"M{month_number}")

    @classmethod
    def of(cls, mapping: Optional[Mapping[str, object]] = None) -> "BonusTable":
        return cls(percentages={k: Decimal(str(v)) for k, v in (mapping or {}).items()})


class FamilyPolicy(BaseModel):
    """Bonus and penalty tables for one contract family"""
    model_config = ConfigDict(frozen=True)

    bonus_table: BonusTable = Field(default_factory=BonusTable)
    penalty_rules: PenaltyRules = Field(default_factory=PenaltyRules)


class PolicyProvider(ABC):
    """Configuration lookup collaborator"""

    @abstractmethod
    def get_policy(self, family: ContractFamily) -> FamilyPolicy:
        """Return the active policy for a contract family"""


class StaticPolicyProvider(PolicyProvider):
    """Serves a fixed family -> policy mapping; unknown families get empty tables"""

    def __init__(self, policies: Optional[Mapping[ContractFamily, FamilyPolicy]] = None,
                 strict: bool = False):
        self._policies = dict(policies or {})
        self._strict = strict

    def get_policy(self, family: ContractFamily) -> FamilyPolicy:
        policy = self._policies.get(family)
        if policy is None:
            if self._strict:
                raise NotFoundError(f"No policy configured for family {family.value}",
                                    family=family.value)
            return FamilyPolicy()
        return policy
