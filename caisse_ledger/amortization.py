"""
Amortization Module

Turns (principal, periodic rate, payment policy, start date) into an ordered
schedule of installments with interest / principal / remaining balance.

Three policies:
- fixed installment: the installment is declared, the duration falls out
- fixed duration: the duration is declared, the installment is solved for
- custom: an explicit payment per period

Interest compounds per period on the outstanding balance; a payment never
exceeds the balance with interest. Everything is Decimal.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .currency import Amount, ZERO, ONE, round_half_up, to_decimal
from .errors import ScheduleError, ValidationError

# Balance below this is considered settled (floating residue of compounding)
SETTLEMENT_TOLERANCE = Decimal('0.01')

# Upper bound on simulated periods when no duration cap applies
HARD_PERIOD_LIMIT = 120


class Cadence(Enum):
    """Spacing between two consecutive due dates"""
    MONTHLY = "monthly"
    DAILY = "daily"


class PaymentPolicy(Enum):
    """How the schedule is solved"""
    FIXED_INSTALLMENT = "fixed_installment"
    FIXED_DURATION = "fixed_duration"
    CUSTOM = "custom"


@dataclass(frozen=True)
class AmortizationRow:
    """Single period of a schedule"""
    month: int                 # 1-based period number
    date: date
    payment: Decimal
    interest: Decimal
    principal: Decimal
    remaining_balance: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            'month': self.month,
            'date': self.date.isoformat(),
            'payment': str(self.payment),
            'interest': str(self.interest),
            'principal': str(self.principal),
            'remaining_balance': str(self.remaining_balance),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AmortizationRow':
        return cls(
            month=int(data['month']),
            date=date.fromisoformat(data['date']),
            payment=Decimal(data['payment']),
            interest=Decimal(data['interest']),
            principal=Decimal(data['principal']),
            remaining_balance=Decimal(data['remaining_balance']),
        )


@dataclass
class AmortizationResult:
    """Outcome of a schedule simulation"""
    policy: PaymentPolicy
    principal: Decimal
    rate: Decimal
    installment: Optional[Decimal]
    rows: List[AmortizationRow] = field(default_factory=list)
    max_duration: Optional[int] = None
    remaining_at_max_duration: Decimal = ZERO
    suggested_installment: Optional[Decimal] = None

    @property
    def duration(self) -> int:
        return len(self.rows)

    @property
    def total_paid(self) -> Decimal:
        return sum((row.payment for row in self.rows), ZERO)

    @property
    def total_interest(self) -> Decimal:
        return sum((row.interest for row in self.rows), ZERO)

    @property
    def final_balance(self) -> Decimal:
        return self.rows[-1].remaining_balance if self.rows else self.principal

    @property
    def is_valid(self) -> bool:
        """Balance cleared within the cap"""
        if self.final_balance != ZERO:
            return False
        return self.max_duration is None or self.duration <= self.max_duration


@dataclass
class ReferenceSchedule:
    """
    Baseline for a capped family: the principal compounded over the full cap
    with no payments, split evenly and rounded half-up.
    """
    montant_global: Decimal
    raw_installment: Decimal
    installment: Decimal
    result: AmortizationResult

    @property
    def rows(self) -> List[AmortizationRow]:
        return self.result.rows


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, index: int, cadence: Cadence = Cadence.MONTHLY) -> date:
    """Due date of the 0-based period ``index``"""
    if cadence == Cadence.DAILY:
        return start_date + timedelta(days=index)
    return add_months(start_date, index)


def _settle(balance: Decimal) -> Decimal:
    return ZERO if balance < SETTLEMENT_TOLERANCE else balance


class AmortizationCalculator:
    """
    Pure schedule computations. Holds no state besides the cadence used to
    lay out due dates.
    """

    def __init__(self, cadence: Cadence = Cadence.MONTHLY):
        self.cadence = cadence

    # ------------------------------------------------------------------
    # Fixed installment
    # ------------------------------------------------------------------

    def fixed_installment(
        self,
        principal: Amount,
        rate: Amount,
        installment: Amount,
        start_date: date,
        max_duration: Optional[int] = None,
        fill_to_duration: bool = False
    ) -> AmortizationResult:
        """
        Simulate a declared installment until the balance clears or the cap
        is hit. When the cap is hit with a balance left, the result carries
        ``remaining_at_max_duration`` and ``suggested_installment``.

        ``fill_to_duration`` keeps emitting (zero) rows after payoff until the
        cap, which is how reference schedules are laid out.
        """
        principal = to_decimal(principal)
        rate = to_decimal(rate)
        installment = to_decimal(installment)
        self._validate_terms(principal, rate, max_duration)
        if installment <= ZERO:
            raise ValidationError("Installment must be positive", installment=installment)

        limit = max_duration if max_duration is not None else HARD_PERIOD_LIMIT
        result = AmortizationResult(
            policy=PaymentPolicy.FIXED_INSTALLMENT,
            principal=principal,
            rate=rate,
            installment=installment,
            max_duration=max_duration,
        )

        remaining = principal
        for index in range(limit):
            if remaining == ZERO and not fill_to_duration:
                break
            interest = remaining * rate
            balance_with_interest = remaining + interest
            payment = min(installment, balance_with_interest)
            remaining = _settle(max(ZERO, balance_with_interest - payment))
            result.rows.append(AmortizationRow(
                month=index + 1,
                date=due_date_for(start_date, index, self.cadence),
                payment=payment,
                interest=interest,
                principal=payment - interest,
                remaining_balance=remaining,
            ))

        if remaining > ZERO:
            result.remaining_at_max_duration = remaining
            if max_duration is not None:
                result.suggested_installment = self.suggested_minimum_installment(
                    principal, rate, max_duration
                )
        return result

    def clears_within(self, principal: Amount, rate: Amount, installment: Amount,
                      duration: int) -> bool:
        """Whether ``installment`` clears the balance in at most ``duration`` periods"""
        principal = to_decimal(principal)
        rate = to_decimal(rate)
        installment = to_decimal(installment)
        remaining = principal
        for _ in range(duration):
            if remaining == ZERO:
                break
            balance_with_interest = remaining * (ONE + rate)
            remaining = _settle(max(ZERO, balance_with_interest - min(installment, balance_with_interest)))
        return remaining == ZERO

    # ------------------------------------------------------------------
    # Fixed duration
    # ------------------------------------------------------------------

    def suggested_minimum_installment(self, principal: Amount, rate: Amount,
                                      duration: int) -> Decimal:
        """
        Smallest whole installment clearing the balance within ``duration``
        periods (binary search over whole units; clearing is monotonic in
        the installment).
        """
        principal = to_decimal(principal)
        rate = to_decimal(rate)
        self._validate_terms(principal, rate, duration)
        if principal == ZERO:
            return ZERO

        low = int((principal / duration).to_integral_value(rounding=ROUND_CEILING))
        high = int(self.montant_global(principal, rate, duration).to_integral_value(rounding=ROUND_CEILING))
        high = max(high, low)
        while low < high:
            middle = (low + high) // 2
            if self.clears_within(principal, rate, middle, duration):
                high = middle
            else:
                low = middle + 1
        return Decimal(low)

    def fixed_duration(self, principal: Amount, rate: Amount, duration: int,
                       start_date: date) -> AmortizationResult:
        """Schedule with the minimal whole installment for ``duration`` periods"""
        installment = self.suggested_minimum_installment(principal, rate, duration)
        if installment == ZERO:
            return AmortizationResult(
                policy=PaymentPolicy.FIXED_DURATION,
                principal=to_decimal(principal),
                rate=to_decimal(rate),
                installment=ZERO,
                max_duration=duration,
            )
        result = self.fixed_installment(principal, rate, installment, start_date,
                                        max_duration=duration)
        result.policy = PaymentPolicy.FIXED_DURATION
        return result

    def montant_global(self, principal: Amount, rate: Amount, duration: int) -> Decimal:
        """Principal compounded ``duration`` times with no payment subtracted"""
        amount = to_decimal(principal)
        rate = to_decimal(rate)
        for _ in range(duration):
            amount = amount * rate + amount
        return amount

    def reference_schedule(self, principal: Amount, rate: Amount, duration: int,
                           start_date: date) -> ReferenceSchedule:
        """
        Reference schedule for a capped family: ``montant_global / duration``
        rounded half-up, replayed through the fixed-installment algorithm
        over exactly ``duration`` rows.
        """
        principal = to_decimal(principal)
        rate = to_decimal(rate)
        self._validate_terms(principal, rate, duration)
        if duration < 1:
            raise ValidationError("Reference schedule needs a positive duration", duration=duration)

        montant_global = self.montant_global(principal, rate, duration)
        raw_installment = montant_global / duration
        installment = round_half_up(raw_installment)
        result = self.fixed_installment(principal, rate, installment, start_date,
                                        max_duration=duration, fill_to_duration=True)
        result.policy = PaymentPolicy.FIXED_DURATION
        return ReferenceSchedule(
            montant_global=montant_global,
            raw_installment=raw_installment,
            installment=installment,
            result=result,
        )

    # ------------------------------------------------------------------
    # Custom schedule
    # ------------------------------------------------------------------

    def custom(self, principal: Amount, rate: Amount, payments: Sequence[Amount],
               start_date: date, max_duration: Optional[int] = None) -> AmortizationResult:
        """
        Free-form schedule: one declared payment per period. Valid when the
        declared payments clear the compounded balance within the cap.
        """
        principal = to_decimal(principal)
        rate = to_decimal(rate)
        self._validate_terms(principal, rate, max_duration)
        declared = [to_decimal(p) for p in payments]
        if any(p < ZERO for p in declared):
            raise ValidationError("Declared payments cannot be negative")

        result = AmortizationResult(
            policy=PaymentPolicy.CUSTOM,
            principal=principal,
            rate=rate,
            installment=None,
            max_duration=max_duration,
        )
        remaining = principal
        for index, declared_payment in enumerate(declared):
            interest = remaining * rate
            balance_with_interest = remaining + interest
            payment = min(declared_payment, balance_with_interest)
            remaining = _settle(balance_with_interest - payment)
            result.rows.append(AmortizationRow(
                month=index + 1,
                date=due_date_for(start_date, index, self.cadence),
                payment=payment,
                interest=interest,
                principal=payment - interest,
                remaining_balance=remaining,
            ))

        result.remaining_at_max_duration = remaining
        if not result.is_valid and max_duration is not None:
            result.suggested_installment = self.suggested_minimum_installment(
                principal, rate, max_duration
            )
        return result

    # ------------------------------------------------------------------

    def require_valid(self, result: AmortizationResult) -> AmortizationResult:
        """Raise ScheduleError unless the result clears within its cap"""
        if not result.is_valid:
            raise ScheduleError(
                "Schedule does not clear the balance within the allowed duration",
                duration=result.duration,
                max_duration=result.max_duration,
                remaining_at_max_duration=result.remaining_at_max_duration,
                suggested_installment=result.suggested_installment,
            )
        return result

    @staticmethod
    def _validate_terms(principal: Decimal, rate: Decimal, duration: Optional[int]) -> None:
        if principal < ZERO:
            raise ValidationError("Principal cannot be negative", principal=principal)
        if rate < ZERO:
            raise ValidationError("Rate cannot be negative", rate=rate)
        if duration is not None and duration < 1:
            raise ValidationError("Duration must be at least one period", duration=duration)
