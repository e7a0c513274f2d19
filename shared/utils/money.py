"""
shared/utils/money.py
Currency arithmetic for the Stripe boundary.

The ledger keeps major units (dollars). Minor units (cents) exist only on
the way to the provider, and every rounding step is half-away-from-zero.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[Decimal, int, float, str]

MINOR_UNIT_FACTOR = Decimal(100)
CENT = Decimal("0.01")


def _as_decimal(value: Number) -> Decimal:
    # str() keeps floats like 33.33 from dragging binary noise into the result
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round_half_away(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_minor_units(amount: Number) -> int:
    """33.33 → 3333."""
    return round_half_away(_as_decimal(amount) * MINOR_UNIT_FACTOR)


def to_major_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNIT_FACTOR).quantize(CENT)


def platform_fee_minor(amount_minor: int, fee_percent: Number = 10) -> int:
    """Marketplace cut of a charge: 3333 → 333 at 10%."""
    return round_half_away(Decimal(amount_minor) * _as_decimal(fee_percent) / 100)


def net_payout_minor(amount_minor: int, fee_percent: Number = 10) -> int:
    """Expert's share of a charge: 3333 → 3000 at 10% (2999.7 rounds up)."""
    return round_half_away(Decimal(amount_minor) * (100 - _as_decimal(fee_percent)) / 100)


def session_price(hourly_rate: Number, duration_minutes: int) -> Decimal:
    """Agreed price of a session, rounded to the cent."""
    price = _as_decimal(hourly_rate) * Decimal(duration_minutes) / Decimal(60)
    return price.quantize(CENT, rounding=ROUND_HALF_UP)
