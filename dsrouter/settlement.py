"""
DS Router - Flash Settlement

One venue round trip per curve-priced trade:

    QUOTED -> BORROWING -> SETTLING -> SETTLED
        any failure                 -> UNWOUND

The router opens a CallbackContext keyed by a fresh trade id, asks the venue
to lend, and the venue calls settlement_callback. The callback only accepts
a context that is still open, from the venue it was opened for, on behalf of
the router itself; the context is consumed on first use.
"""

import logging
import secrets
import threading
from typing import Dict

from .custody import InMemoryCustody, InMemoryIssuer
from .dex_types import (
    CallbackContext, SettlementOutcome, SettlementPhase, TradeSide, normalize_address,
)
from .errors import CallbackOriginMismatch, InsufficientLiquidity

log = logging.getLogger(__name__)

TRANSITIONS = {
    SettlementPhase.QUOTED: {SettlementPhase.BORROWING, SettlementPhase.UNWOUND},
    SettlementPhase.BORROWING: {SettlementPhase.SETTLING, SettlementPhase.UNWOUND},
    SettlementPhase.SETTLING: {SettlementPhase.SETTLED, SettlementPhase.UNWOUND},
    SettlementPhase.SETTLED: {SettlementPhase.UNWOUND},
    SettlementPhase.UNWOUND: set(),
}


def new_trade_id() -> str:
    return secrets.token_hex(16)


def advance(ctx: CallbackContext, phase: SettlementPhase):
    if phase not in TRANSITIONS[ctx.phase]:
        raise RuntimeError(f"Trade {ctx.trade_id}: illegal transition {ctx.phase.value} -> {phase.value}")
    ctx.phase = phase


class CallbackRegistry:
    """In-flight contexts, visible only to the trade that opened them."""

    def __init__(self):
        self._contexts: Dict[str, CallbackContext] = {}
        self._lock = threading.Lock()

    def open(self, ctx: CallbackContext):
        with self._lock:
            if ctx.trade_id in self._contexts:
                raise ValueError(f"Trade {ctx.trade_id} already in flight")
            self._contexts[ctx.trade_id] = ctx

    def claim(self, trade_id: str, venue: str) -> CallbackContext:
        """Remove and return the context, checking it belongs to venue."""
        with self._lock:
            ctx = self._contexts.get(trade_id)
            if ctx is None:
                raise CallbackOriginMismatch(f"No settlement in flight for {trade_id}")
            if normalize_address(venue) != ctx.venue:
                raise CallbackOriginMismatch(f"Trade {trade_id} was not opened with {venue}")
            return self._contexts.pop(trade_id)

    def discard(self, trade_id: str):
        with self._lock:
            self._contexts.pop(trade_id, None)

    def __len__(self):
        with self._lock:
            return len(self._contexts)


class FlashSettlement:
    """
    Executes the borrow -> callback -> repay round trip for the router.

    For a BUY the router borrows (s - e) RA, deposits s RA for s CT + s DS,
    repays the venue in CT and refunds the CT left over to the caller.
    For a SELL it borrows q CT, redeems q CT + q DS for q RA and repays the
    venue in RA; what remains is the seller's proceeds.
    """

    def __init__(self, address: str, custody: InMemoryCustody, issuer: InMemoryIssuer):
        self.address = normalize_address(address)
        self.custody = custody
        self.issuer = issuer
        self.registry = CallbackRegistry()

    def execute(self, ctx: CallbackContext, venue) -> SettlementOutcome:
        """
        Run one settlement. The context is unwound and released on failure.

        Raises:
            InsufficientLiquidity: Repayment exceeds what the trade produced
            CallbackOriginMismatch: Callback failed authentication
        """
        self.registry.open(ctx)
        try:
            advance(ctx, SettlementPhase.BORROWING)
            if ctx.side == TradeSide.BUY:
                outcome = venue.borrow_and_settle(ctx.assets.ra, ctx.assets.ct,
                                                  ctx.borrowed_amount, 0, ctx.trade_id, self)
            else:
                outcome = venue.borrow_and_settle(ctx.assets.ra, ctx.assets.ct,
                                                  0, ctx.borrowed_amount, ctx.trade_id, self)
        except Exception:
            self.registry.discard(ctx.trade_id)
            ctx.phase = SettlementPhase.UNWOUND
            log.warning(f"Settlement {ctx.trade_id} unwound")
            raise

        if ctx.phase != SettlementPhase.SETTLED:
            self.registry.discard(ctx.trade_id)
            ctx.phase = SettlementPhase.UNWOUND
            raise CallbackOriginMismatch(f"Venue returned without settling {ctx.trade_id}")
        return outcome

    def settlement_callback(self, sender: str, context: str, payment_amount: int,
                            payment_asset: str, venue: str) -> SettlementOutcome:
        """
        Venue callback. Authenticates, then settles the borrowed amount.

        Args:
            sender: Address that initiated the borrow; must be the router
            context: Trade id of the open settlement
            payment_amount: Amount owed to the venue
            payment_asset: Asset owed
            venue: Calling venue

        Returns:
            SettlementOutcome with repayment, refund, realized_amount
        """
        if normalize_address(sender) != self.address:
            raise CallbackOriginMismatch(f"Borrow initiated by {sender}, not the router")
        ctx = self.registry.claim(context, venue)
        advance(ctx, SettlementPhase.SETTLING)

        if ctx.side == TradeSide.BUY:
            outcome = self._settle_buy(ctx, payment_amount, payment_asset)
        else:
            outcome = self._settle_sell(ctx, payment_amount, payment_asset)

        advance(ctx, SettlementPhase.SETTLED)
        log.debug(f"Settlement {ctx.trade_id}: {outcome}")
        return outcome

    def _expect_asset(self, payment_asset: str, expected: str):
        if normalize_address(payment_asset) != expected:
            raise CallbackOriginMismatch(f"Venue asked for {payment_asset}, expected {expected}")

    def _settle_buy(self, ctx: CallbackContext, repayment: int,
                    payment_asset: str) -> SettlementOutcome:
        assets = ctx.assets
        self._expect_asset(payment_asset, assets.ct)

        minted = ctx.provided_amount + ctx.borrowed_amount
        if repayment > minted:
            raise InsufficientLiquidity(f"Repayment {repayment} CT exceeds {minted} minted")
        self.issuer.deposit(assets, self.address, minted)

        refund = minted - repayment
        self.custody.transfer(assets.ct, self.address, ctx.venue, repayment)
        if refund:
            self.custody.transfer(assets.ct, self.address, ctx.caller, refund)
        return SettlementOutcome(repayment=repayment, refund=refund, realized_amount=minted)

    def _settle_sell(self, ctx: CallbackContext, repayment: int,
                     payment_asset: str) -> SettlementOutcome:
        assets = ctx.assets
        self._expect_asset(payment_asset, assets.ra)

        redeemed = ctx.borrowed_amount
        if repayment > redeemed:
            raise InsufficientLiquidity(f"Repayment {repayment} RA exceeds {redeemed} redeemed")
        self.issuer.redeem(assets, self.address, redeemed)

        self.custody.transfer(assets.ra, self.address, ctx.venue, repayment)
        return SettlementOutcome(repayment=repayment, refund=0,
                                 realized_amount=redeemed - repayment)
