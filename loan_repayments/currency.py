"""
Currency Module

ISO 4217 currency codes with minor-unit exponents. All amounts handled by this
package are plain integers in the currency's minor unit; floats are never used.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from .exceptions import InvalidAmountError


class Currency(Enum):
    """ISO 4217 Currency Codes with minor-unit exponent"""
    VND = ("VND", 0)  # Vietnamese Dong, no minor unit in use
    SGD = ("SGD", 2)  # Singapore Dollar, cents
    USD = ("USD", 2)  # US Dollar, cents
    EUR = ("EUR", 2)  # Euro, cents
    GBP = ("GBP", 2)  # British Pound, pence
    JPY = ("JPY", 0)  # Japanese Yen, no minor unit

    def __init__(self, code: str, exponent: int):
        self.code = code
        self.exponent = exponent

    @classmethod
    def from_code(cls, code: str) -> Optional["Currency"]:
        """Look up a currency by its ISO code, None if unsupported"""
        try:
            return cls[code.upper()]
        except (KeyError, AttributeError):
            return None


def is_supported_currency(code: str) -> bool:
    """Check whether a currency code is one of the known ISO codes"""
    return Currency.from_code(code) is not None


def validate_minor_units(value, field: str = "amount") -> int:
    """
    Validate that a value is a strictly positive integer amount

    Args:
        value: Candidate amount in minor units
        field: Field name used in the error message

    Returns:
        The value as int

    Raises:
        InvalidAmountError: If value is not an int (bools excluded) or is not > 0
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountError(f"{field} must be an integer number of minor units, got {value!r}")
    if value <= 0:
        raise InvalidAmountError(f"{field} must be positive, got {value}")
    return value


def format_minor_units(amount: int, currency_code: str) -> str:
    """
    Format a minor-unit amount for display

    Unknown currency codes are rendered as the raw integer.
    """
    currency = Currency.from_code(currency_code)
    if currency is None:
        return f"{currency_code} {amount}"
    if currency.exponent == 0:
        return f"{currency.code} {amount:,}"
    major = Decimal(amount).scaleb(-currency.exponent)
    return f"{currency.code} {major:,.{currency.exponent}f}"
