"""
DS Router - Liquidity Venue

The external RA/CT pool the router borrows from. A venue lends one asset,
calls the borrower back, and checks it was repaid in the other asset:

    borrow_and_settle(asset_a, asset_b, amount_a, amount_b, context, receiver)
      -> receiver.settlement_callback(sender, context, payment_amount,
                                      payment_asset, venue)

YieldSpaceVenue prices with the same x^(1-t) + y^(1-t) = k curve the
router solves against.
"""

import logging
from typing import Dict, Tuple

from .bonding_curve import (
    DEFAULT_ONE_MINUS_T_CEILING, DEFAULT_ONE_MINUS_T_FLOOR,
    compute_one_minus_t, required_amount_in,
)
from .clock import Clock
from .custody import InMemoryCustody
from .dex_types import SettlementOutcome, derive_address, normalize_address
from .errors import InsufficientLiquidity
from .fixed_point import mul_div

log = logging.getLogger(__name__)

BPS = 10000


class LiquidityVenue:
    """Interface the router consumes."""

    def pool_address(self, asset_a: str, asset_b: str) -> str:
        raise NotImplementedError

    def get_reserves(self, ra: str, ct: str) -> Tuple[int, int]:
        raise NotImplementedError

    def quote_amount_in(self, asset_out: str, asset_in: str, amount_out: int) -> int:
        raise NotImplementedError

    def borrow_and_settle(self, asset_a: str, asset_b: str, amount_a: int, amount_b: int,
                          context: str, receiver) -> SettlementOutcome:
        raise NotImplementedError


class YieldSpaceVenue(LiquidityVenue):
    """
    In-memory RA/CT pools. Each pool holds its reserves at its own address,
    which is also the identity it calls back with.

    Usage:
        venue = YieldSpaceVenue(custody, clock, fee_bps=0)
        venue.register_pool(ra, ct, issued_at, expiry)
        venue.add_liquidity(lp, ra, ct, 1000 * 10**18, 1000 * 10**18)
    """

    def __init__(self, custody: InMemoryCustody, clock: Clock, fee_bps: int = 0,
                 one_minus_t_floor: int = DEFAULT_ONE_MINUS_T_FLOOR,
                 one_minus_t_ceiling: int = DEFAULT_ONE_MINUS_T_CEILING):
        if not 0 <= fee_bps < BPS:
            raise ValueError(f"Fee must be within [0, {BPS}) bps, got {fee_bps}")
        self.custody = custody
        self.clock = clock
        self.fee_bps = fee_bps
        self.one_minus_t_floor = one_minus_t_floor
        self.one_minus_t_ceiling = one_minus_t_ceiling
        # {(ra, ct): (issued_at, expiry)}
        self.pools: Dict[Tuple[str, str], Tuple[int, int]] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # POOLS
    # ═══════════════════════════════════════════════════════════════════════

    def register_pool(self, ra: str, ct: str, issued_at: int, expiry: int):
        key = (normalize_address(ra), normalize_address(ct))
        self.pools[key] = (issued_at, expiry)
        log.info(f"[VENUE] Registered pool RA={key[0]} CT={key[1]}")

    def add_liquidity(self, provider: str, ra: str, ct: str, ra_amount: int, ct_amount: int):
        pool = self.pool_address(ra, ct)
        self.custody.transfer(ra, provider, pool, ra_amount)
        self.custody.transfer(ct, provider, pool, ct_amount)
        log.info(f"[VENUE] {provider} added {ra_amount} RA + {ct_amount} CT")

    def _pool_key(self, asset_a: str, asset_b: str) -> Tuple[str, str]:
        a, b = normalize_address(asset_a), normalize_address(asset_b)
        if (a, b) in self.pools:
            return a, b
        if (b, a) in self.pools:
            return b, a
        raise KeyError(f"No pool for {a}/{b}")

    def pool_address(self, asset_a: str, asset_b: str) -> str:
        ra, ct = self._pool_key(asset_a, asset_b)
        return derive_address(f"dsrouter.venue.{ra}.{ct}")

    def get_reserves(self, ra: str, ct: str) -> Tuple[int, int]:
        pool = self.pool_address(ra, ct)
        return (self.custody.balance_of(ra, pool), self.custody.balance_of(ct, pool))

    def one_minus_t(self, ra: str, ct: str) -> int:
        issued_at, expiry = self.pools[self._pool_key(ra, ct)]
        return compute_one_minus_t(issued_at, expiry, self.clock.timestamp(),
                                   self.one_minus_t_floor, self.one_minus_t_ceiling)

    # ═══════════════════════════════════════════════════════════════════════
    # PRICING
    # ═══════════════════════════════════════════════════════════════════════

    def quote_amount_in(self, asset_out: str, asset_in: str, amount_out: int) -> int:
        """
        Amount of asset_in owed for taking amount_out of asset_out, fee
        included, rounded up.

        Raises:
            InsufficientLiquidity: amount_out would empty the reserve
        """
        p = self.one_minus_t(asset_out, asset_in)
        pool = self.pool_address(asset_out, asset_in)
        reserve_out = self.custody.balance_of(asset_out, pool)
        reserve_in = self.custody.balance_of(asset_in, pool)
        if amount_out >= reserve_out:
            raise InsufficientLiquidity(
                f"Venue holds {reserve_out}, cannot lend {amount_out}"
            )
        raw = required_amount_in(reserve_out, reserve_in, amount_out, p)
        return mul_div(raw, BPS + self.fee_bps, BPS, round_up=True)

    # ═══════════════════════════════════════════════════════════════════════
    # FLASH LOAN
    # ═══════════════════════════════════════════════════════════════════════

    def borrow_and_settle(self, asset_a: str, asset_b: str, amount_a: int, amount_b: int,
                          context: str, receiver) -> SettlementOutcome:
        """
        Lend exactly one of the two assets, call the receiver back and check
        the other asset came back in full.

        Args:
            asset_a, asset_b: The pool's two assets
            amount_a, amount_b: Amount lent of each; exactly one is non-zero
            context: Opaque trade reference handed back to the receiver
            receiver: Object with `address` and `settlement_callback`

        Returns:
            The receiver's SettlementOutcome

        Raises:
            InsufficientLiquidity: Receiver did not repay
        """
        if (amount_a > 0) == (amount_b > 0) or min(amount_a, amount_b) < 0:
            raise ValueError(f"Exactly one positive borrow amount expected: {amount_a}, {amount_b}")

        if amount_a > 0:
            lent_asset, payment_asset, amount = asset_a, asset_b, amount_a
        else:
            lent_asset, payment_asset, amount = asset_b, asset_a, amount_b

        pool = self.pool_address(asset_a, asset_b)
        payment = self.quote_amount_in(lent_asset, payment_asset, amount)
        balance_before = self.custody.balance_of(payment_asset, pool)

        self.custody.transfer(lent_asset, pool, receiver.address, amount)
        log.debug(f"[VENUE] Lent {amount} of {lent_asset}, expecting {payment}")

        outcome = receiver.settlement_callback(
            receiver.address, context, payment, normalize_address(payment_asset), pool
        )

        repaid = self.custody.balance_of(payment_asset, pool) - balance_before
        if repaid < payment:
            raise InsufficientLiquidity(f"Venue repaid {repaid} of {payment}")
        return outcome
