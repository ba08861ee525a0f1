"""
Multi-Currency Support Module

Handles the currencies the treasury operates in and proper Decimal precision
for financial calculations. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    ARS = ("ARS", 2)  # Argentine Peso
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: Union[str, 'Currency']) -> 'Currency':
        """Resolve a currency from its ISO code"""
        if isinstance(code, Currency):
            return code
        try:
            return cls[str(code).strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Convert a numeric value to Decimal without going through binary floats

    Raises:
        ValueError: If the value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round2(value: Union[Decimal, int, float, str]) -> Decimal:
    """Round to 2 decimals, half-up (the money rounding used everywhere)"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def format_amount(amount: Decimal, currency: Currency) -> str:
    """Human-readable amount used in audit details and error messages"""
    return Money(amount, currency).to_string()
