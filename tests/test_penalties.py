"""
Test suite for delay penalties and quality scores
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from caisse_ledger.penalties import (
    PenaltyCalculator, PenaltyMode, PenaltyWindow, days_late, quality_score,
)
from caisse_ledger.policies import PenaltyRules, PenaltyStep

DUE = date(2024, 1, 1)


@pytest.fixture
def calculator():
    return PenaltyCalculator()


@pytest.fixture
def flat_rules():
    return PenaltyRules(per_day=Decimal('1'))


class TestDaysLate:

    def test_counts_whole_days(self):
        assert days_late(DUE, date(2024, 1, 6)) == 5
        assert days_late(DUE, datetime(2024, 1, 6, 23, 59, tzinfo=timezone.utc)) == 5

    def test_early_payment_is_not_negative(self):
        assert days_late(DUE, date(2023, 12, 20)) == 0


class TestQualityScore:
    """Score bands from on time to critical delay"""

    @pytest.mark.parametrize("days,score,remark", [
        (0, 10, "on time"),
        (1, 8, "minor delay"),
        (7, 8, "minor delay"),
        (8, 6, "moderate delay"),
        (15, 6, "moderate delay"),
        (16, 4, "significant delay"),
        (30, 4, "significant delay"),
        (31, 2, "severe delay"),
        (60, 2, "severe delay"),
        (61, 1, "critical delay"),
        (400, 1, "critical delay"),
    ])
    def test_bands(self, days, score, remark):
        assert quality_score(days) == (score, remark)


class TestPenaltyWindows:

    def test_window_boundaries(self, calculator):
        assert calculator.window_for(0) == PenaltyWindow.ON_TIME
        assert calculator.window_for(1) == PenaltyWindow.TOLERANCE
        assert calculator.window_for(3) == PenaltyWindow.TOLERANCE
        assert calculator.window_for(4) == PenaltyWindow.LATE_WITH_PENALTY
        assert calculator.window_for(12) == PenaltyWindow.LATE_WITH_PENALTY
        assert calculator.window_for(13) == PenaltyWindow.DEFAULT

    def test_custom_thresholds(self):
        calculator = PenaltyCalculator(tolerance_days=1, max_penalty_days=5)
        assert calculator.window_for(2) == PenaltyWindow.LATE_WITH_PENALTY
        assert calculator.window_for(6) == PenaltyWindow.DEFAULT

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            PenaltyCalculator(tolerance_days=5, max_penalty_days=4)
        with pytest.raises(ValueError):
            PenaltyCalculator(tolerance_days=-1)


class TestAssess:
    """Penalty assessment per mode"""

    def test_on_time(self, calculator, flat_rules):
        assessment = calculator.assess(DUE, Decimal('10000'), paid_date=DUE, rules=flat_rules)
        assert assessment.window == PenaltyWindow.ON_TIME
        assert assessment.applied_penalty == Decimal('0')
        assert assessment.estimated_penalty == Decimal('0')
        assert assessment.quality_score == 10

    def test_tolerance_is_flagged_but_not_charged(self, calculator, flat_rules):
        assessment = calculator.assess(DUE, Decimal('10000'), paid_date=date(2024, 1, 3),
                                       rules=flat_rules)
        assert assessment.is_tolerance
        assert assessment.applied_penalty == Decimal('0')
        assert assessment.estimated_penalty == Decimal('667')

    def test_per_day_rule_in_penalty_window(self, calculator, flat_rules):
        assessment = calculator.assess(DUE, Decimal('10000'), paid_date=date(2024, 1, 6),
                                       rules=flat_rules)
        assert assessment.days_late == 5
        assert assessment.window == PenaltyWindow.LATE_WITH_PENALTY
        assert assessment.per_day_rate == Decimal('1')
        assert assessment.applied_penalty == Decimal('500')
        assert assessment.estimated_penalty == Decimal('1667')
        assert assessment.quality_score == 8

    def test_stepped_rule(self, calculator):
        rules = PenaltyRules(steps=[
            PenaltyStep(from_day=4, to_day=8, rate=Decimal('1')),
            PenaltyStep(from_day=9, to_day=12, rate=Decimal('2')),
        ])
        assessment = calculator.assess(DUE, Decimal('10000'), paid_date=date(2024, 1, 11), rules=rules)
        assert assessment.per_day_rate == Decimal('2')
        assert assessment.applied_penalty == Decimal('2000')

    def test_per_day_rule_stops_at_default(self, calculator, flat_rules):
        assessment = calculator.assess(DUE, Decimal('10000'), paid_date=date(2024, 1, 14),
                                       rules=flat_rules)
        assert assessment.exceeds_default
        assert assessment.applied_penalty == Decimal('0')

    def test_estimated_mode_for_credits(self, calculator):
        assessment = calculator.assess(DUE, Decimal('100000'), paid_date=date(2024, 1, 11),
                                       mode=PenaltyMode.ESTIMATED)
        assert assessment.applied_penalty == Decimal('33333')

        beyond = calculator.assess(DUE, Decimal('100000'), paid_date=date(2024, 1, 31),
                                   mode=PenaltyMode.ESTIMATED)
        assert beyond.exceeds_default
        assert beyond.applied_penalty == Decimal('100000')

    def test_no_penalty_mode(self, calculator, flat_rules):
        assessment = calculator.assess(DUE, Decimal('10000'), paid_date=date(2024, 1, 8),
                                       rules=flat_rules, mode=PenaltyMode.NONE)
        assert assessment.window == PenaltyWindow.LATE_WITH_PENALTY
        assert assessment.applied_penalty == Decimal('0')
        assert assessment.estimated_penalty == Decimal('2333')

    def test_unpaid_installment_uses_now(self, calculator, flat_rules):
        assessment = calculator.assess(DUE, Decimal('10000'), now=date(2024, 1, 5), rules=flat_rules)
        assert assessment.days_late == 4
        assert assessment.applied_penalty == Decimal('400')

    def test_reference_date_required(self, calculator):
        with pytest.raises(ValueError):
            calculator.assess(DUE, Decimal('10000'))
