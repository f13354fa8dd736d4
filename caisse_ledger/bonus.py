"""
Bonus Module

Month-indexed bonus lookup. The bonus is one period in arrears: month
index ``i`` uses the percentage configured for calendar month ``i`` (the
previous one), except on the last month which uses its own percentage.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .contracts import ContractFamily
from .currency import Amount, ZERO, round_half_up, to_decimal
from .policies import BonusTable

# Calendar months 1 to 3 never earn a bonus
FIRST_BONUS_MONTH_INDEX = 3


@dataclass(frozen=True)
class BonusComputation:
    month_index: int
    percent: Optional[Decimal]     # None when no percentage applies
    base_amount: Decimal
    bonus_amount: Decimal


class BonusCalculator:

    @staticmethod
    def percent_for(month_index: int, planned_duration: int,
                    bonus_table: BonusTable) -> Optional[Decimal]:
        if month_index < FIRST_BONUS_MONTH_INDEX:
            return None
        if month_index + 1 == planned_duration:
            return bonus_table.percent_for_month(month_index + 1)
        return bonus_table.percent_for_month(month_index)

    @staticmethod
    def base_amount(family: ContractFamily, month_index: int,
                    accumulated_amount: Amount, monthly_amount: Amount) -> Decimal:
        if family == ContractFamily.FREE_SCHEDULE:
            return to_decimal(accumulated_amount)
        return to_decimal(monthly_amount) * (month_index + 1)

    def compute(
        self,
        month_index: int,
        planned_duration: int,
        bonus_table: BonusTable,
        family: ContractFamily,
        accumulated_amount: Amount,
        monthly_amount: Amount
    ) -> BonusComputation:
        """Bonus earned for the installment at ``month_index`` (0-based)"""
        percent = self.percent_for(month_index, planned_duration, bonus_table)
        base = self.base_amount(family, month_index, accumulated_amount, monthly_amount)
        amount = round_half_up(base * percent / 100) if percent is not None else ZERO
        return BonusComputation(
            month_index=month_index,
            percent=percent,
            base_amount=base,
            bonus_amount=amount,
        )
