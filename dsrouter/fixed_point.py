"""
DS Router - Fixed-Point Helpers

Amounts live as integer base units (18 decimals, i.e. wei). Curve math runs
on Decimal token units inside a dedicated high-precision context and is
converted back with explicit rounding.

Percentages use the same 18-decimal scale: 100% == 100 * 10**18.
"""

from decimal import Decimal, Context, ROUND_DOWN, ROUND_UP, ROUND_HALF_EVEN, localcontext

from web3 import Web3

from .errors import DivisionByZero, InvalidDomain

WAD = 10 ** 18
PERCENT_BASE = 100 * WAD          # 100%
SECONDS_PER_DAY = 86400

DEFAULT_PRECISION = 60

CURVE_CONTEXT = Context(prec=DEFAULT_PRECISION, rounding=ROUND_HALF_EVEN)


def set_precision(precision: int):
    """Change the number of significant digits used for curve math."""
    if precision < 28:
        raise ValueError(f"Precision too low for 18-decimal math: {precision}")
    CURVE_CONTEXT.prec = precision


def to_units(amount: int) -> Decimal:
    """Convert base units (wei) to Decimal token units."""
    if amount == 0:
        return Decimal(0)
    return Decimal(Web3.from_wei(amount, "ether"))


def to_base_units(value: Decimal, rounding: str = ROUND_DOWN) -> int:
    """
    Convert Decimal token units to base units.

    Args:
        value: Token amount, must be >= 0
        rounding: ROUND_DOWN (default) or ROUND_UP

    Returns:
        Integer amount in wei
    """
    if value < 0:
        raise InvalidDomain(f"Negative amount: {value}")
    with localcontext(CURVE_CONTEXT):
        scaled = value * WAD
        return int(scaled.to_integral_value(rounding=rounding))


def wad_to_decimal(value: int) -> Decimal:
    """Fixed-point ratio (1e18 == 1.0) to Decimal."""
    with localcontext(CURVE_CONTEXT):
        return Decimal(value) / WAD


def mul_div(a: int, b: int, denominator: int, round_up: bool = False) -> int:
    """Exact a * b / denominator on integers."""
    if denominator == 0:
        raise DivisionByZero(f"mul_div({a}, {b}, 0)")
    product = a * b
    quotient, remainder = divmod(product, denominator)
    if round_up and remainder:
        quotient += 1
    return quotient


def percent_of(amount: int, percent: int) -> int:
    """amount * percent / 100%, rounded down."""
    return mul_div(amount, percent, PERCENT_BASE)


def div(a: Decimal, b: Decimal) -> Decimal:
    if b == 0:
        raise DivisionByZero(f"{a} / 0")
    with localcontext(CURVE_CONTEXT):
        return a / b


def power(base: Decimal, exponent: Decimal) -> Decimal:
    """base ** exponent for base >= 0 and a fractional exponent."""
    if base < 0:
        raise InvalidDomain(f"Negative base: {base}")
    if base == 0:
        return Decimal(0)
    with localcontext(CURVE_CONTEXT):
        return base ** exponent


__all__ = [
    "WAD", "PERCENT_BASE", "SECONDS_PER_DAY", "CURVE_CONTEXT",
    "ROUND_DOWN", "ROUND_UP",
    "set_precision", "to_units", "to_base_units", "wad_to_decimal",
    "mul_div", "percent_of", "div", "power",
]
