"""
Test suite for month-indexed bonuses
"""

import pytest
from decimal import Decimal

from caisse_ledger.bonus import BonusCalculator
from caisse_ledger.contracts import ContractFamily
from caisse_ledger.policies import BonusTable


@pytest.fixture
def table():
    return BonusTable.of({"M3": 1, "M4": 2, "M7": 5, "M12": 10})


@pytest.fixture
def calculator():
    return BonusCalculator()


class TestPercentLookup:
    """Bonus is looked up one month in arrears"""

    @pytest.mark.parametrize("month_index", [0, 1, 2])
    def test_first_three_months_earn_nothing(self, calculator, table, month_index):
        assert calculator.percent_for(month_index, 12, table) is None

    def test_uses_previous_calendar_month(self, calculator, table):
        assert calculator.percent_for(3, 12, table) == Decimal('1')
        assert calculator.percent_for(4, 12, table) == Decimal('2')
        assert calculator.percent_for(7, 12, table) == Decimal('5')

    def test_missing_key_means_no_bonus(self, calculator, table):
        assert calculator.percent_for(5, 12, table) is None

    def test_last_month_uses_its_own_percentage(self, calculator, table):
        assert calculator.percent_for(11, 12, table) == Decimal('10')
        assert calculator.percent_for(6, 7, table) == Decimal('5')
        assert calculator.percent_for(3, 4, table) == Decimal('2')

    def test_sparse_table_over_seven_months(self, calculator):
        sparse = BonusTable.of({"M4": 2, "M7": 5})
        # Month index 3 reads M3, which the table does not have
        assert calculator.percent_for(3, 7, sparse) is None
        assert calculator.percent_for(4, 7, sparse) == Decimal('2')
        assert calculator.percent_for(5, 7, sparse) is None
        assert calculator.percent_for(6, 7, sparse) == Decimal('5')

        bonus = calculator.compute(6, 7, sparse, ContractFamily.EMERGENCY_SAVINGS,
                                   Decimal('10000'), Decimal('10000'))
        assert bonus.base_amount == Decimal('70000')
        assert bonus.bonus_amount == Decimal('3500')


class TestCompute:

    def test_savings_base_is_cumulative_monthly_amount(self, calculator, table):
        bonus = calculator.compute(4, 12, table, ContractFamily.EMERGENCY_SAVINGS,
                                   Decimal('10000'), Decimal('10000'))
        assert bonus.base_amount == Decimal('50000')
        assert bonus.percent == Decimal('2')
        assert bonus.bonus_amount == Decimal('1000')

    def test_free_schedule_base_is_accumulated(self, calculator, table):
        bonus = calculator.compute(4, 12, table, ContractFamily.FREE_SCHEDULE,
                                   Decimal('150000'), Decimal('100000'))
        assert bonus.base_amount == Decimal('150000')
        assert bonus.bonus_amount == Decimal('3000')

    def test_rounds_half_up(self, calculator, table):
        bonus = calculator.compute(4, 12, table, ContractFamily.FREE_SCHEDULE,
                                   Decimal('12345'), Decimal('12345'))
        assert bonus.bonus_amount == Decimal('247')

    def test_no_percentage_no_bonus(self, calculator, table):
        bonus = calculator.compute(1, 12, table, ContractFamily.EMERGENCY_SAVINGS,
                                   Decimal('10000'), Decimal('10000'))
        assert bonus.percent is None
        assert bonus.bonus_amount == Decimal('0')
