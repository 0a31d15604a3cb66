"""
Currency Module

Money representation, currency precision, and parsing/formatting of
user-entered amounts. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with precision and display symbol"""
    INR = ("INR", 2, "₹")  # Indian Rupee, lakh/crore digit grouping
    USD = ("USD", 2, "$")
    EUR = ("EUR", 2, "€")
    GBP = ("GBP", 2, "£")

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol


AmountLike = Union[str, int, float, Decimal]


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency = Currency.INR

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        object.__setattr__(self, 'amount', quantize_amount(self.amount, self.currency))

    def _check_currency(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for display, e.g. ₹1,00,000.00"""
        return format_amount(self.amount, self.currency)

    @classmethod
    def zero(cls, currency: Currency = Currency.INR) -> 'Money':
        return cls(Decimal('0'), currency)


def quantize_amount(value: Decimal, currency: Currency = Currency.INR) -> Decimal:
    """
    Round a Decimal to the currency's minor-unit precision

    Raises:
        ValidationError: If the value has too many digits for the decimal context
    """
    try:
        return value.quantize(
            Decimal('0.1') ** currency.precision,
            rounding=ROUND_HALF_UP
        )
    except InvalidOperation:
        raise ValidationError(f"Amount {value} is too large")


_NUMBER_PATTERN = re.compile(r'^[+-]?\d+(,\d+)*(\.\d+)?$')
_STRIP_PATTERN = re.compile(r'(?i)\s|rs\.?|inr|usd|eur|gbp|[₹$€£]')


def parse_amount(value: AmountLike) -> Decimal:
    """
    Parse a user-entered amount into a canonical Decimal.

    Commas are treated as digit-group separators in any position, so both
    "1,00,000" and "100,000" parse to 100000. Currency symbols, codes and
    whitespace are ignored.

    Args:
        value: String, int, float or Decimal amount

    Returns:
        Decimal value

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValidationError("Amount must be numeric")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        clean_value = _STRIP_PATTERN.sub('', value)
        if not clean_value or not _NUMBER_PATTERN.match(clean_value):
            raise ValidationError(f"Cannot parse amount '{value}'")
        try:
            result = Decimal(clean_value.replace(',', ''))
        except InvalidOperation:
            raise ValidationError(f"Cannot parse amount '{value}'")
    else:
        raise ValidationError("Amount must be a string or number")

    if not result.is_finite():
        raise ValidationError(f"Amount must be finite, got '{value}'")
    return result


def _group_indian(digits: str) -> str:
    """Group integer digits as 12,34,567 (last three, then pairs)"""
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    pairs = []
    while len(head) > 2:
        pairs.insert(0, head[-2:])
        head = head[:-2]
    if head:
        pairs.insert(0, head)
    return ",".join(pairs) + "," + tail


def format_amount(amount: AmountLike, currency: Currency = Currency.INR) -> str:
    """
    Format an amount for display.

    INR uses lakh/crore grouping (₹1,00,000.00); other currencies use
    thousands grouping ($100,000.00).
    """
    value = quantize_amount(parse_amount(amount), currency)
    sign = "-" if value < 0 else ""
    text = f"{abs(value):.{currency.precision}f}"
    if "." in text:
        integer_part, fraction = text.split(".")
        fraction = "." + fraction
    else:
        integer_part, fraction = text, ""

    if currency == Currency.INR:
        grouped = _group_indian(integer_part)
    else:
        grouped = f"{int(integer_part):,}"

    return f"{sign}{currency.symbol}{grouped}{fraction}"


def to_money(amount: AmountLike, currency: Currency = Currency.INR) -> Money:
    """Parse an amount-like value into Money"""
    return Money(parse_amount(amount), currency)
