"""
DS Router - Bonding Curve

Time-decaying curve shared by the router and the liquidity venue:

    x^(1-t) + y^(1-t) = k

x is the venue's RA reserve, y its CT reserve. A buyer depositing e RA
receives s DS: the router borrows (s - e) RA, mints s CT + s DS from s RA and
repays s CT. The amount s is the root of

    f(s) = x^(1-t) + y^(1-t) - (x - s + e)^(1-t) - (y + s)^(1-t)

found by bisection.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext

from .errors import InvalidDomain, NoBracket, NoConvergence
from .fixed_point import (
    CURVE_CONTEXT, WAD, ROUND_DOWN, ROUND_UP,
    to_units, to_base_units, wad_to_decimal, power, div,
)

log = logging.getLogger(__name__)

DEFAULT_EPSILON = 10 ** 9                  # 1e-9 token units
DEFAULT_MAX_ITERATIONS = 256
DEFAULT_MAX_BRACKET_ADJUSTMENTS = 16

# 1 - t is kept away from 0 (maturity) and 1 (constant sum)
DEFAULT_ONE_MINUS_T_FLOOR = WAD // 100     # 0.01
DEFAULT_ONE_MINUS_T_CEILING = WAD - WAD // 100   # 0.99

_BRACKET_SHRINK = Decimal("0.9")
# tolerances never exceed this fraction of the trade size
_RELATIVE_TOLERANCE = Decimal("1e-9")


@dataclass(frozen=True)
class CurveParams:
    """Inputs of one curve-priced trade. Derived per trade, never stored."""
    ra_reserve: int
    ct_reserve: int
    deposit_in: int
    one_minus_t: int

    def to_dict(self) -> dict:
        return {
            "ra_reserve": self.ra_reserve,
            "ct_reserve": self.ct_reserve,
            "deposit_in": self.deposit_in,
            "one_minus_t": self.one_minus_t,
        }

    def solve(self, **budget) -> int:
        """Root of the curve for these inputs; budget as for solve()."""
        return solve(self.ra_reserve, self.ct_reserve, self.deposit_in, self.one_minus_t,
                     **budget)


def compute_one_minus_t(issued_at: int, expiry: int, now: int,
                        floor: int = DEFAULT_ONE_MINUS_T_FLOOR,
                        ceiling: int = DEFAULT_ONE_MINUS_T_CEILING) -> int:
    """
    Normalized remaining time of an epoch as an 18-decimal exponent.

    Args:
        issued_at: Epoch issuance timestamp
        expiry: Epoch expiry timestamp
        now: Current timestamp
        floor: Lowest exponent returned (near maturity)
        ceiling: Highest exponent returned (right after issuance)

    Returns:
        1 - t clamped to [floor, ceiling]
    """
    if expiry <= issued_at:
        raise InvalidDomain(f"Expiry {expiry} not after issuance {issued_at}")
    duration = expiry - issued_at
    elapsed = min(max(now - issued_at, 0), duration)
    t = elapsed * WAD // duration
    return min(max(WAD - t, floor), ceiling)


def _excess(x: Decimal, y: Decimal, e: Decimal, s: Decimal, p: Decimal) -> Decimal:
    with localcontext(CURVE_CONTEXT):
        u = x - s + e
        v = y + s
        if u < 0 or v < 0:
            raise InvalidDomain(f"Reserve would go negative at s={s}")
        return power(x, p) + power(y, p) - power(u, p) - power(v, p)


def excess_demand(x: int, y: int, deposit_in: int, s: int, one_minus_t: int) -> Decimal:
    """f(s) in token units for base-unit inputs."""
    return _excess(to_units(x), to_units(y), to_units(deposit_in),
                   to_units(s), wad_to_decimal(one_minus_t))


def _check_inputs(x: int, y: int, deposit_in: int, one_minus_t: int):
    if x <= 0 or y <= 0:
        raise InvalidDomain(f"Reserves must be positive: x={x}, y={y}")
    if deposit_in < 0:
        raise InvalidDomain(f"Negative deposit: {deposit_in}")
    if not 0 < one_minus_t <= WAD:
        raise InvalidDomain(f"1-t out of (0, 1]: {one_minus_t}")


def solve(x: int, y: int, deposit_in: int, one_minus_t: int,
          epsilon: int = DEFAULT_EPSILON,
          max_iterations: int = DEFAULT_MAX_ITERATIONS,
          max_bracket_adjustments: int = DEFAULT_MAX_BRACKET_ADJUSTMENTS) -> int:
    """
    Find the DS amount s a buyer receives for deposit_in RA.

    The returned root always lies on the side where f(s) <= 0, so the venue
    repayment for the implied loan never exceeds s.

    Args:
        x: RA reserve (base units)
        y: CT reserve (base units)
        deposit_in: RA supplied by the buyer (base units)
        one_minus_t: Decay exponent, 18 decimals, in (0, 1]
        epsilon: Convergence tolerance (base units), tightened for small
            deposits so the root stays within a 1e-9 fraction of the trade
        max_iterations: Bisection budget
        max_bracket_adjustments: Bracket shrink budget

    Returns:
        s in base units, rounded down

    Raises:
        InvalidDomain: Inputs or a candidate point outside the domain
        NoBracket: No sign change found in [0, x + deposit_in)
        NoConvergence: Iteration budget exhausted
    """
    _check_inputs(x, y, deposit_in, one_minus_t)
    if deposit_in == 0:
        return 0

    xu, yu, eu = to_units(x), to_units(y), to_units(deposit_in)
    eps = to_units(epsilon)

    if one_minus_t == WAD:
        # Constant sum: f(s) == -deposit_in for every s, so the curve does
        # not pin s down. Take the stationary point where both post-trade
        # reserves are equal.
        with localcontext(CURVE_CONTEXT):
            s = (xu + eu - yu) / 2
        s = min(max(s, Decimal(0)), xu + eu)
        log.debug(f"Constant-sum closed form: s={s}")
        return to_base_units(s, ROUND_DOWN)

    p = wad_to_decimal(one_minus_t)
    delta = to_units(1)

    lo = Decimal(0)
    with localcontext(CURVE_CONTEXT):
        hi = xu + eu - delta
    f_lo = _excess(xu, yu, eu, lo, p)
    f_hi = _excess(xu, yu, eu, hi, p)

    adjustments = 0
    while f_lo * f_hi > 0:
        if adjustments >= max_bracket_adjustments:
            raise NoBracket(
                f"No sign change in [0, {hi}] after {adjustments} adjustments "
                f"(x={x}, y={y}, e={deposit_in}, 1-t={one_minus_t})"
            )
        with localcontext(CURVE_CONTEXT):
            hi = lo + (hi - lo) * _BRACKET_SHRINK
        f_hi = _excess(xu, yu, eu, hi, p)
        adjustments += 1

    if f_lo == 0:
        return 0

    # keep f(lo) < 0 < f(hi)
    if f_lo > 0:
        raise NoBracket(f"f(0) > 0 (x={x}, y={y}, e={deposit_in})")

    with localcontext(CURVE_CONTEXT):
        eps_f = min(eps, -f_lo * _RELATIVE_TOLERANCE)
        eps_s = min(eps, eu * _RELATIVE_TOLERANCE)

    for iteration in range(max_iterations):
        with localcontext(CURVE_CONTEXT):
            mid = (lo + hi) / 2
        f_mid = _excess(xu, yu, eu, mid, p)

        if f_mid <= 0:
            lo = mid
            if -f_mid < eps_f:
                log.debug(f"Converged on |f| after {iteration + 1} iterations: s={mid}")
                return to_base_units(mid, ROUND_DOWN)
        else:
            hi = mid

        with localcontext(CURVE_CONTEXT):
            width = hi - lo
        if width < eps_s:
            log.debug(f"Converged on width after {iteration + 1} iterations: s={lo}")
            return to_base_units(lo, ROUND_DOWN)

    raise NoConvergence(f"No root within {max_iterations} iterations")


def required_amount_in(reserve_out: int, reserve_in: int, amount_out: int,
                       one_minus_t: int) -> int:
    """
    Amount to pay in so the invariant holds after taking amount_out.

    Args:
        reserve_out: Reserve of the asset taken out (base units)
        reserve_in: Reserve of the asset paid in (base units)
        amount_out: Amount taken out (base units)
        one_minus_t: Decay exponent, 18 decimals

    Returns:
        Amount in, rounded up
    """
    if not 0 < one_minus_t <= WAD:
        raise InvalidDomain(f"1-t out of (0, 1]: {one_minus_t}")
    if amount_out >= reserve_out:
        raise InvalidDomain(f"Cannot take {amount_out} of reserve {reserve_out}")
    if amount_out == 0:
        return 0

    p = wad_to_decimal(one_minus_t)
    out_units = to_units(reserve_out)
    in_units = to_units(reserve_in)
    with localcontext(CURVE_CONTEXT):
        k = power(out_units, p) + power(in_units, p)
        remaining = k - power(out_units - to_units(amount_out), p)
        new_in = power(remaining, div(Decimal(1), p))
        return to_base_units(max(new_in - in_units, Decimal(0)), ROUND_UP)
