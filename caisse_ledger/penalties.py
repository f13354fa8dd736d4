"""
Penalty Module

Delay-banded penalty and quality-score computation from a due date and a
paid date (or "now" when nothing was paid yet).

Windows:
- day 0: on time
- days 1..tolerance: tolerance, flagged but never charged
- days tolerance+1..max: per-day rule for monthly savings, estimated
  penalty for credits
- beyond max: the contract state machine decides (default)
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple, Union

from .currency import Amount, ZERO, round_half_up, to_decimal
from .policies import PenaltyRules

DEFAULT_TOLERANCE_DAYS = 3
DEFAULT_MAX_PENALTY_DAYS = 12

# (upper bound of days late, score, remark); evaluated in order
QUALITY_BANDS: Tuple[Tuple[Optional[int], int, str], ...] = (
    (0, 10, "on time"),
    (7, 8, "minor delay"),
    (15, 6, "moderate delay"),
    (30, 4, "significant delay"),
    (60, 2, "severe delay"),
    (None, 1, "critical delay"),
)


class PenaltyWindow(Enum):
    ON_TIME = "on_time"
    TOLERANCE = "tolerance"
    LATE_WITH_PENALTY = "late_with_penalty"
    DEFAULT = "default"


class PenaltyMode(Enum):
    """Which charging rule applies once outside the tolerance window"""
    PER_DAY = "per_day"        # monthly savings: amount * rate% * days
    ESTIMATED = "estimated"    # credits: round(amount * days / 30)
    NONE = "none"              # daily-cadence savings


@dataclass(frozen=True)
class PenaltyAssessment:
    """Everything the ledger stores about a payment's delay"""
    days_late: int
    window: PenaltyWindow
    estimated_penalty: Decimal
    applied_penalty: Decimal
    per_day_rate: Decimal
    quality_score: int
    quality_remark: str

    @property
    def is_tolerance(self) -> bool:
        return self.window == PenaltyWindow.TOLERANCE

    @property
    def exceeds_default(self) -> bool:
        return self.window == PenaltyWindow.DEFAULT


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def days_late(due_date: Union[date, datetime], paid_date: Union[date, datetime]) -> int:
    """Whole days between due and paid, never negative"""
    return max(0, (_as_date(paid_date) - _as_date(due_date)).days)


def quality_score(days: int) -> Tuple[int, str]:
    """Audit score (0-10) and remark for a delay"""
    for upper, score, remark in QUALITY_BANDS:
        if upper is None or days <= upper:
            return score, remark
    raise AssertionError("quality bands must end with an open band")


class PenaltyCalculator:
    """Stateless; tolerance and default thresholds are fixed per instance"""

    def __init__(self, tolerance_days: int = DEFAULT_TOLERANCE_DAYS,
                 max_penalty_days: int = DEFAULT_MAX_PENALTY_DAYS):
        if tolerance_days < 0 or max_penalty_days < tolerance_days:
            raise ValueError("Need 0 <= tolerance_days <= max_penalty_days")
        self.tolerance_days = tolerance_days
        self.max_penalty_days = max_penalty_days

    def window_for(self, days: int) -> PenaltyWindow:
        if days <= 0:
            return PenaltyWindow.ON_TIME
        if days <= self.tolerance_days:
            return PenaltyWindow.TOLERANCE
        if days <= self.max_penalty_days:
            return PenaltyWindow.LATE_WITH_PENALTY
        return PenaltyWindow.DEFAULT

    @staticmethod
    def estimated_penalty(installment_amount: Amount, days: int) -> Decimal:
        """Penalty shown before the payment is recorded"""
        if days <= 0:
            return ZERO
        return round_half_up(to_decimal(installment_amount) * days / 30)

    def applied_per_day_penalty(self, installment_amount: Amount, days: int,
                                rules: PenaltyRules) -> Tuple[Decimal, Decimal]:
        """Per-day rule; charged only inside the penalty window. Returns (penalty, rate)"""
        if self.window_for(days) != PenaltyWindow.LATE_WITH_PENALTY:
            return ZERO, ZERO
        rate = rules.per_day_rate(days)
        return round_half_up(to_decimal(installment_amount) * rate / 100 * days), rate

    def assess(
        self,
        due_date: Union[date, datetime],
        installment_amount: Amount,
        paid_date: Optional[Union[date, datetime]] = None,
        now: Optional[Union[date, datetime]] = None,
        rules: Optional[PenaltyRules] = None,
        mode: PenaltyMode = PenaltyMode.PER_DAY
    ) -> PenaltyAssessment:
        """
        Assess a delay. ``paid_date`` falls back to ``now`` for installments
        not yet paid; one of the two is required.
        """
        reference = paid_date if paid_date is not None else now
        if reference is None:
            raise ValueError("Either paid_date or now is required")

        days = days_late(due_date, reference)
        window = self.window_for(days)
        estimated = self.estimated_penalty(installment_amount, days)
        score, remark = quality_score(days)

        applied, rate = ZERO, ZERO
        if window == PenaltyWindow.LATE_WITH_PENALTY:
            if mode == PenaltyMode.PER_DAY:
                applied, rate = self.applied_per_day_penalty(
                    installment_amount, days, rules or PenaltyRules()
                )
            elif mode == PenaltyMode.ESTIMATED:
                applied = estimated
        elif window == PenaltyWindow.DEFAULT and mode == PenaltyMode.ESTIMATED:
            # Credits keep accruing; there is no default cut-off for them here
            applied = estimated

        return PenaltyAssessment(
            days_late=days,
            window=window,
            estimated_penalty=estimated,
            applied_penalty=applied,
            per_day_rate=rate,
            quality_score=score,
            quality_remark=remark,
        )
