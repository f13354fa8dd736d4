"""
Amounts and Rounding Module

All monetary values are Decimal. ``round_half_up`` is the single rounding
rule for every derived amount the engine displays or stores.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_FLOOR, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

# High precision for compounding over long schedules
getcontext().prec = 28

Amount = Union[Decimal, int, str, float]

ZERO = Decimal('0')
ONE = Decimal('1')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    XAF = ("XAF", 0)  # Central African CFA franc, no minor unit in practice
    EUR = ("EUR", 2)
    USD = ("USD", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value: Amount) -> Decimal:
    """Coerce an int/str/float/Decimal input to Decimal"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.1
        return Decimal(str(value))
    return Decimal(value)


def round_half_up(value: Amount, places: int = 0) -> Decimal:
    """
    Round with ties going up: frac >= 0.5 -> ceil, else floor.

    Computed as floor(x + 0.5) so negative ties also go towards +inf
    (Decimal's ROUND_HALF_UP would send -2.5 to -3).
    """
    quantum = Decimal(1).scaleb(-places)
    shifted = to_decimal(value) + quantum / 2
    return shifted.quantize(quantum, rounding=ROUND_FLOOR)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation used for display in logs, events and
    error messages. Arithmetic stays on raw Decimal inside the calculators.
    """
    amount: Decimal
    currency: Currency = Currency.XAF

    def __post_init__(self):
        object.__setattr__(
            self, 'amount', round_half_up(to_decimal(self.amount), self.currency.precision)
        )

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def is_zero(self) -> bool:
        return self.amount == ZERO

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.amount:,.0f} {self.currency.code}"
        return f"{self.amount:,.{self.currency.precision}f} {self.currency.code}"

    def __str__(self) -> str:
        return self.to_string()
