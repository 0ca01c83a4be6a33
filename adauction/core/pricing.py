"""
Pricing - Minimum acceptable bid computation and USDC unit helpers.

All amounts inside the server are integer atomic units (USDC has 6
decimals). Dollar strings only appear at the HTTP edge.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Union


USDC_DECIMALS = 6
USDC_UNIT = 10 ** USDC_DECIMALS


def parse_usdc(value: Union[str, int, float, Decimal]) -> int:
    """
    Convert a dollar amount ("2", "$1.50", 1.5) to atomic units.

    Fractions below one atomic unit are truncated.

    Raises:
        ValueError: If the value is not a finite non-negative number
    """
    text = str(value).strip().lstrip("$")
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid USDC amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid USDC amount: {value!r}")
    return int((amount * USDC_UNIT).to_integral_value(rounding=ROUND_DOWN))


def to_decimal(amount: int) -> Decimal:
    """Atomic units to a Decimal dollar value."""
    return Decimal(amount) / USDC_UNIT


def format_usdc(amount: Optional[int]) -> str:
    """Atomic units to a "$x.yy" display string."""
    if amount is None:
        return "$0.00"
    return f"${to_decimal(amount):.2f}"


def usdc_amount(amount: Optional[int]) -> Optional[str]:
    """Atomic units to a plain dollar string ("2.00", "1.234567") for JSON bodies."""
    if amount is None:
        return None
    text = f"{to_decimal(amount):.6f}".rstrip("0")
    whole, _, frac = text.partition(".")
    return f"{whole}.{frac.ljust(2, '0')}"


class PriceRule(ABC):
    """
    Pricing policy for the next acceptable bid.

    Implementations must be monotonic: a higher current bid never yields a
    lower minimum.
    """

    @abstractmethod
    def minimum_required(self, current_bid: Optional[int]) -> int:
        """Minimum amount (atomic units) the next bid must reach."""


class IncrementPriceRule(PriceRule):
    """Starting price for an empty slot, then current bid plus a fixed increment."""

    def __init__(self, starting_bid: int, increment: int):
        if starting_bid <= 0 or increment <= 0:
            raise ValueError("starting_bid and increment must be positive")
        self.starting_bid = starting_bid
        self.increment = increment

    def minimum_required(self, current_bid: Optional[int]) -> int:
        if not current_bid:
            return self.starting_bid
        return current_bid + self.increment
