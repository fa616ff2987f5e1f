"""
Currency and Money Module

ISO 4217 currency codes and Decimal rounding helpers for loan amounts.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

CENTS = Decimal('0.01')
ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    KES = ("KES", 2)  # Kenyan Shilling
    TZS = ("TZS", 2)  # Tanzanian Shilling
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


def to_decimal(value: Union[Decimal, int, str]) -> Decimal:
    """
    Convert a value to Decimal without going through float

    Raises:
        ValueError: If value is a float, NaN or infinite, or cannot be parsed
    """
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats; pass a string or Decimal")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not result.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value}")
    return result


def round_money(value: Decimal) -> Decimal:
    """Round to cents using banker-safe HALF_UP rounding"""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        amount = to_decimal(self.amount)
        rounded = amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def is_positive(self) -> bool:
        return self.amount > ZERO

    def to_string(self) -> str:
        """Format for display, e.g. 'KES 120,000.00'"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert a user-entered amount to Decimal, handling common formats

    Args:
        value: String representation of number ("KES 1,200.50", "1200,5")

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both present - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
