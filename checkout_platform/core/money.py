"""Money helpers. Amounts are integer cents, percentages are Decimal."""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, str, float, Decimal]

HUNDRED = Decimal("100")
CENT = Decimal("1")
PERCENT_QUANTUM = Decimal("0.01")


def to_percentage(value: Number) -> Decimal:
    """Normalize a percentage to two decimal places."""
    return Decimal(str(value)).quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP)


def percent_of(amount_cents: int, percentage: Number, rounding: str = ROUND_DOWN) -> int:
    """
    Compute a percentage of an amount in cents.

    Args:
        amount_cents: Base amount in cents
        percentage: Percentage, e.g. Decimal("12.5")
        rounding: Decimal rounding mode for the sub-cent remainder

    Returns:
        int: Share in whole cents
    """
    share = Decimal(amount_cents) * Decimal(str(percentage)) / HUNDRED
    return int(share.quantize(CENT, rounding=rounding))


def to_cents(value: Number) -> int:
    """Convert a currency amount (e.g. "19.99") to cents."""
    return int((Decimal(str(value)) * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP))


def format_cents(amount_cents: int, currency: str = "USD") -> str:
    return f"{currency.upper()} {Decimal(amount_cents) / HUNDRED:.2f}"
