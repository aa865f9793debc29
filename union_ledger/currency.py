"""
Money Module

Fixed-point money stored as an integer count of minor units (butut, cents)
plus an ISO 4217 currency tag. NEVER uses float for monetary values: rates
are Decimal and every division names its rounding rule.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, ROUND_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import List, Union
from enum import Enum
import re

from .exceptions import CurrencyMismatch, InsufficientFunds, InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with minor-unit precision"""
    GMD = ("GMD", 2)  # Gambian Dalasi, 100 butut
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_per_major(self) -> int:
        return 10 ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise InvalidAmount(f"Unsupported currency code: {code}")


class RoundingRule(Enum):
    """How a fractional minor unit is resolved"""
    HALF_UP = ROUND_HALF_UP
    DOWN = ROUND_DOWN
    UP = ROUND_UP


def round_minor(value: Decimal, rounding: RoundingRule = RoundingRule.HALF_UP) -> int:
    """Round a Decimal count of minor units to a whole minor unit"""
    return int(value.quantize(Decimal('1'), rounding=rounding.value))


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation in integer minor units.
    All monetary values MUST use this class.
    """
    minor_units: int
    currency: Currency

    def __post_init__(self):
        if isinstance(self.minor_units, bool) or not isinstance(self.minor_units, int):
            raise InvalidAmount(
                f"Money must be built from integer minor units, got {type(self.minor_units).__name__}; "
                f"use Money.of() for major-unit amounts"
            )

    @classmethod
    def of(cls, amount: Union[Decimal, str, int], currency: Currency,
           rounding: RoundingRule = RoundingRule.HALF_UP) -> 'Money':
        """Build from a major-unit amount, e.g. Money.of('100.50', Currency.GMD)"""
        if isinstance(amount, float):
            raise InvalidAmount("Floating point amounts are not accepted")
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            raise InvalidAmount(f"Cannot convert '{amount}' to an amount")
        if not value.is_finite():
            raise InvalidAmount(f"Cannot convert '{amount}' to an amount")
        return cls(round_minor(value * currency.minor_per_major, rounding), currency)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(0, currency)

    @property
    def amount(self) -> Decimal:
        """Major-unit amount, for display and serialization only"""
        return Decimal(self.minor_units).scaleb(-self.currency.precision)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise CurrencyMismatch(
                f"Cannot {verb} {self.currency.code} and {other.currency.code}"
            )

    def add(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.minor_units + other.minor_units, self.currency)

    def subtract(self, other: 'Money', allow_negative: bool = False) -> 'Money':
        """
        Subtract other from this amount.

        Raises:
            InsufficientFunds: If the result would be negative and the
                caller did not allow it
        """
        self._check_currency(other, "subtract")
        result = self.minor_units - other.minor_units
        if result < 0 and not allow_negative:
            raise InsufficientFunds(
                f"Cannot subtract {other.to_string()} from {self.to_string()}",
                available=self,
                requested=other,
            )
        return Money(result, self.currency)

    def multiply_by_rate(self, rate: Union[Decimal, str, int],
                         rounding: RoundingRule = RoundingRule.HALF_UP) -> 'Money':
        """Percentage-of: self * rate, rounded to the minor unit"""
        if isinstance(rate, float):
            raise InvalidAmount("Floating point rates are not accepted")
        if not isinstance(rate, Decimal):
            rate = Decimal(str(rate))
        return Money(round_minor(Decimal(self.minor_units) * rate, rounding), self.currency)

    def split_evenly(self, parts: int,
                     rounding: RoundingRule = RoundingRule.HALF_UP) -> List['Money']:
        """
        Split into `parts` shares. Every share but the last is the rounded
        quotient; the last share takes whatever remains, so the shares
        always sum back to this amount exactly.
        """
        if parts <= 0:
            raise InvalidAmount("Cannot split into fewer than one part")
        share = round_minor(Decimal(self.minor_units) / Decimal(parts), rounding)
        shares = [Money(share, self.currency) for _ in range(parts - 1)]
        shares.append(Money(self.minor_units - share * (parts - 1), self.currency))
        return shares

    def __add__(self, other: 'Money') -> 'Money':
        return self.add(other)

    def __sub__(self, other: 'Money') -> 'Money':
        return self.subtract(other, allow_negative=True)

    def __neg__(self) -> 'Money':
        return Money(-self.minor_units, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.minor_units), self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor_units < other.minor_units

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor_units <= other.minor_units

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor_units > other.minor_units

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.minor_units >= other.minor_units

    def is_zero(self) -> bool:
        return self.minor_units == 0

    def is_positive(self) -> bool:
        return self.minor_units > 0

    def is_negative(self) -> bool:
        return self.minor_units < 0

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {"minor_units": self.minor_units, "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(int(data["minor_units"]), Currency.from_code(data["currency"]))


def sum_money(amounts: List[Money], currency: Currency) -> Money:
    """Exact sum of a list of Money values in one currency"""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert a user-entered string to Decimal, handling common formats

    Args:
        value: String representation of number ("D1,250.50", "1250,5")

    Returns:
        Decimal value

    Raises:
        InvalidAmount: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise InvalidAmount("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - assume comma is thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:  # Decimal separator
            clean_value = clean_value.replace(',', '.')
        else:  # Thousands separator
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")
    if not result.is_finite():
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")
    return result
