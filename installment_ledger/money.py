"""
Money Helpers

Decimal arithmetic for the ledger. Every monetary amount is a Decimal quantized
to cents; the rounding policy of a plan decides how computed figures are rounded.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, ROUND_FLOOR, getcontext
from enum import Enum
from typing import Union

# Enough precision for amortization powers over long terms
getcontext().prec = 28


CENT = Decimal('0.01')
ZERO = Decimal('0.00')

# Tolerance when deciding whether an entry is fully paid
EPSILON = Decimal('0.001')

Numeric = Union[Decimal, int, float, str]


class RoundingPolicy(Enum):
    """How computed amounts are rounded to cents"""
    NEAREST = "nearest"
    UP = "up"
    DOWN = "down"


_ROUNDING_MODES = {
    RoundingPolicy.NEAREST: ROUND_HALF_UP,
    RoundingPolicy.UP: ROUND_CEILING,
    RoundingPolicy.DOWN: ROUND_FLOOR,
}


def to_decimal(value: Numeric) -> Decimal:
    """Convert a number or numeric string to Decimal without float artifacts"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean is not a monetary value")
    return Decimal(str(value))


def coerce_policy(policy: Union[RoundingPolicy, str, None]) -> RoundingPolicy:
    """Accept a RoundingPolicy or its string value; None means nearest"""
    if policy is None:
        return RoundingPolicy.NEAREST
    if isinstance(policy, RoundingPolicy):
        return policy
    return RoundingPolicy(str(policy).lower())


def apply_rounding(value: Numeric, policy: Union[RoundingPolicy, str, None] = RoundingPolicy.NEAREST) -> Decimal:
    """
    Round a value to cents according to the policy.

    up and down round toward +/- infinity, nearest rounds half away from zero.
    """
    mode = _ROUNDING_MODES[coerce_policy(policy)]
    return to_decimal(value).quantize(CENT, rounding=mode)


def quantize_money(value: Numeric) -> Decimal:
    """Normalize an externally supplied amount to cents (half up)"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def is_settled(paid: Decimal, due: Decimal) -> bool:
    """An entry counts as paid once paid >= due - EPSILON"""
    return paid >= due - EPSILON
