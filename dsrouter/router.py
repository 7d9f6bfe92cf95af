"""
DS Router - Flash Swap Router

Routes DS buys and sells for every (reserve, epoch). A buy fills through a
three-stage waterfall, each stage pricing what the previous one left:

  1. rollover sale of reserve DS at the previous epoch's HIYA price
  2. reserve sale, capped by the sell pressure policy
  3. curve-priced flash settlement against the liquidity venue

A sell goes straight to the venue. Each trade is atomic: any failure
reverts the ledger, the HIYA sums and every token movement of the trade.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .bonding_curve import CurveParams, compute_one_minus_t
from .clock import Clock
from .config import RouterConfig
from .custody import InMemoryCustody, InMemoryIssuer, ProfitSink
from .dex_types import (
    CallbackContext, EpochAssetPair, EpochAssets, ReservePool, TradeReceipt, TradeSide,
    derive_address, normalize_address,
)
from .errors import InsufficientLiquidity, InsufficientOutput, PermitNotSupported
from .fixed_point import WAD, mul_div, set_precision
from .hiya import HiyaAccumulator
from .permit import Permit, PermitVerifier
from .reserve_ledger import EMPTY_DRAIN, ReserveDrain, ReserveLedger
from .rollover import RolloverFill, RolloverSaleEngine
from .settlement import FlashSettlement, new_trade_id
from .venue import LiquidityVenue

log = logging.getLogger(__name__)


@dataclass
class BuyPlan:
    """How a buy fills, stage by stage. Built against the live ledger."""
    amount_in: int
    rollover: RolloverFill
    reserve_out: int = 0
    reserve_ra: int = 0
    reserve_drain: ReserveDrain = EMPTY_DRAIN
    dust_ra: int = 0
    curve_deposit: int = 0
    curve_out: int = 0
    curve: Optional[CurveParams] = None

    @property
    def borrowed(self) -> int:
        return self.curve_out - self.curve_deposit if self.curve_out else 0

    @property
    def internal_out(self) -> int:
        return self.rollover.ds_out + self.reserve_out

    def profit_split(self) -> Tuple[int, int]:
        """(vault, stability) RA earned from internal fills."""
        vault = self.rollover.vault_proceeds
        stability = self.rollover.stability_proceeds
        if self.reserve_ra:
            reserve_vault = mul_div(self.reserve_ra, self.reserve_drain.vault,
                                    self.reserve_drain.total)
            vault += reserve_vault
            stability += self.reserve_ra - reserve_vault
        if self.dust_ra:
            drained = self.rollover.drained + self.reserve_drain
            dust_vault = mul_div(self.dust_ra, drained.vault, drained.total)
            vault += dust_vault
            stability += self.dust_ra - dust_vault
        return vault, stability


class FlashSwapRouter:
    """
    Router over every reserve it has been told about.

    Usage:
        router = FlashSwapRouter(custody, issuer, venue, clock,
                                 vault_sink, stability_sink)
        router.on_new_epoch("reserve-1", None, 1, assets, issued_at, expiry)
        router.add_reserve("reserve-1", 1, 500 * 10**18, ReservePool.VAULT, vault)
        receipt = router.buy("reserve-1", 1, 10 * 10**18, min_out=0, caller=alice)
        proceeds = router.sell("reserve-1", 1, 5 * 10**18, min_out=0, caller=alice)
    """

    def __init__(self, custody: InMemoryCustody, issuer: InMemoryIssuer,
                 venue: LiquidityVenue, clock: Clock,
                 vault_sink: ProfitSink, stability_sink: ProfitSink,
                 config: Optional[RouterConfig] = None,
                 permits: Optional[PermitVerifier] = None,
                 address: Optional[str] = None):
        self.config = (config or RouterConfig()).validate()
        set_precision(self.config.precision)

        self.address = normalize_address(address or derive_address("dsrouter.router"))
        self.custody = custody
        self.issuer = issuer
        self.venue = venue
        self.clock = clock
        self.sinks = {ReservePool.VAULT: vault_sink, ReservePool.STABILITY: stability_sink}
        self.permits = permits

        self.ledgers: Dict[str, ReserveLedger] = {}
        self.rollovers: Dict[str, RolloverSaleEngine] = {}
        self.hiya = HiyaAccumulator()
        self.settlement = FlashSettlement(self.address, custody, issuer)

        self._locks: Dict[Tuple[str, int], threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ═══════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════════════

    def _ledger(self, reserve_id: str) -> ReserveLedger:
        try:
            return self.ledgers[reserve_id]
        except KeyError:
            raise KeyError(f"Unknown reserve {reserve_id}")

    def _lock(self, reserve_id: str, epoch_id: int) -> threading.RLock:
        """Lock of a known (reserve, epoch). Locks exist only for created epochs."""
        with self._locks_guard:
            lock = self._locks.get((reserve_id, epoch_id))
        if lock is None:
            raise KeyError(f"Unknown epoch {epoch_id} for reserve {reserve_id}")
        return lock

    @contextmanager
    def _atomic(self, reserve_id: str, epoch_id: int):
        """
        Serialize on (reserve, epoch) and revert the epoch's ledger entry and
        every custody change if the block raises.
        """
        ledger = self._ledger(reserve_id)
        with self._lock(reserve_id, epoch_id):
            saved = ledger.snapshot(epoch_id)
            try:
                with self.custody.journal():
                    yield ledger
            except Exception as e:
                ledger.restore(saved)
                log.warning(f"Trade on {reserve_id}/{epoch_id} unwound: {e}")
                raise

    def _one_minus_t(self, pair: EpochAssetPair, now: int) -> int:
        return compute_one_minus_t(pair.issued_at, pair.expiry, now,
                                   self.config.one_minus_t_floor,
                                   self.config.one_minus_t_ceiling)

    def _curve_params(self, pair: EpochAssetPair, deposit: int, one_minus_t: int) -> CurveParams:
        x, y = self.venue.get_reserves(pair.assets.ra, pair.assets.ct)
        return CurveParams(ra_reserve=x, ct_reserve=y, deposit_in=deposit,
                           one_minus_t=one_minus_t)

    def _solve(self, params: CurveParams) -> int:
        s = params.solve(epsilon=self.config.epsilon,
                         max_iterations=self.config.max_iterations,
                         max_bracket_adjustments=self.config.max_bracket_adjustments)
        log.debug(f"Curve {params.to_dict()} -> {s} DS")
        return s

    def _plan_buy(self, ledger: ReserveLedger, epoch_id: int, amount_in: int,
                  block: int, now: int) -> BuyPlan:
        """
        Run the internal stages against the ledger and price the curve stage.
        Mutates the ledger; callers snapshot it first.
        """
        pair = ledger.pair(epoch_id)
        fill = self.rollovers[ledger.reserve_id].apply(epoch_id, amount_in, block)
        plan = BuyPlan(amount_in=amount_in, rollover=fill)
        residual = fill.ra_left
        if residual == 0:
            return plan

        one_minus_t = self._one_minus_t(pair, now)
        plan.curve = self._curve_params(pair, residual, one_minus_t)
        curve_output = self._solve(plan.curve)
        eligible = ledger.sell_eligible_amount(epoch_id, curve_output)
        if eligible > 0:
            plan.reserve_ra = mul_div(residual, eligible, curve_output)
            plan.reserve_drain = ledger.drain(epoch_id, eligible)
            plan.reserve_out = plan.reserve_drain.total
            residual -= plan.reserve_ra
            if residual == 0:
                return plan
            plan.curve = self._curve_params(pair, residual, one_minus_t)
            curve_output = self._solve(plan.curve)

        if plan.internal_out > 0 and residual < ledger.dust_floor:
            plan.dust_ra = residual
            return plan

        if curve_output <= residual:
            raise InsufficientLiquidity(
                f"Curve gives {curve_output} DS for {residual} RA, nothing to borrow"
            )
        plan.curve_deposit = residual
        plan.curve_out = curve_output
        return plan

    def _receipt(self, trade_id: str, side: TradeSide, reserve_id: str, epoch_id: int,
                 amount_in: int) -> TradeReceipt:
        return TradeReceipt(trade_id=trade_id, side=side, reserve_id=reserve_id,
                            epoch_id=epoch_id, amount_in=amount_in, amount_out=0)

    def _pay_profit(self, epoch_id: int, ra: str, vault: int, stability: int):
        for pool, amount in ((ReservePool.VAULT, vault), (ReservePool.STABILITY, stability)):
            if amount:
                self.custody.transfer(ra, self.address, self.sinks[pool].address, amount)

    def _notify_profit(self, epoch_id: int, vault: int, stability: int):
        if vault + stability == 0:
            return
        self.sinks[ReservePool.VAULT].accept_profit(epoch_id, vault)
        self.sinks[ReservePool.STABILITY].accept_profit(epoch_id, stability)

    @staticmethod
    def _check_amount(amount: int):
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {amount}")

    # ═══════════════════════════════════════════════════════════════════════
    # TRADING
    # ═══════════════════════════════════════════════════════════════════════

    def buy(self, reserve_id: str, epoch_id: int, amount_in: int, min_out: int,
            caller: str) -> TradeReceipt:
        """
        Buy DS with RA.

        Args:
            reserve_id: Reserve to trade
            epoch_id: Epoch to trade
            amount_in: RA paid (base units); pulled from caller's allowance
            min_out: Minimum DS accepted
            caller: Buyer, receives DS and any CT refund

        Returns:
            TradeReceipt; amount_out is the DS bought, refunded_excess the CT
            returned

        Raises:
            InsufficientOutput: Fewer than min_out DS
            InsufficientLiquidity: Venue repayment exceeds the minted CT
        """
        return self._buy(reserve_id, epoch_id, amount_in, min_out, caller)

    def buy_with_permit(self, reserve_id: str, epoch_id: int, amount_in: int, min_out: int,
                        caller: str, permit: Permit) -> TradeReceipt:
        """buy(), with the RA allowance granted by a signed permit."""
        return self._buy(reserve_id, epoch_id, amount_in, min_out, caller, permit)

    def _buy(self, reserve_id: str, epoch_id: int, amount_in: int, min_out: int,
             caller: str, permit: Optional[Permit] = None) -> TradeReceipt:
        self._check_amount(amount_in)
        caller = normalize_address(caller)
        trade_id = new_trade_id()
        block, now = self.clock.now()

        with self._atomic(reserve_id, epoch_id) as ledger:
            pair = ledger.pair(epoch_id)
            assets = pair.assets
            if permit is not None:
                self._apply_permit(assets.ra, permit)
            self.custody.transfer(assets.ra, caller, self.address, amount_in,
                                  spender=self.address)

            plan = self._plan_buy(ledger, epoch_id, amount_in, block, now)
            receipt = self._receipt(trade_id, TradeSide.BUY, reserve_id, epoch_id, amount_in)
            receipt.rollover_out = plan.rollover.ds_out
            receipt.reserve_out = plan.reserve_out

            if plan.curve_out:
                ctx = CallbackContext(
                    trade_id=trade_id,
                    side=TradeSide.BUY,
                    caller=caller,
                    reserve_id=reserve_id,
                    epoch_id=epoch_id,
                    assets=assets,
                    borrowed_amount=plan.borrowed,
                    provided_amount=plan.curve_deposit,
                    venue=self.venue.pool_address(assets.ra, assets.ct),
                )
                outcome = self.settlement.execute(ctx, self.venue)
                receipt.curve_out = outcome.realized_amount
                receipt.refunded_excess = outcome.refund
                receipt.borrowed = plan.borrowed
                receipt.repayment = outcome.repayment

            receipt.amount_out = receipt.rollover_out + receipt.reserve_out + receipt.curve_out
            if receipt.amount_out < min_out:
                raise InsufficientOutput(receipt.amount_out, min_out)

            self.hiya.record_trade(pair, TradeSide.BUY, amount_in, receipt.amount_out,
                                   ledger.state.decay_discount_rate_in_days, now)
            self.custody.transfer(assets.ds, self.address, caller, receipt.amount_out)

            receipt.vault_profit, receipt.stability_profit = plan.profit_split()
            self._pay_profit(epoch_id, assets.ra, receipt.vault_profit, receipt.stability_profit)

        self._notify_profit(epoch_id, receipt.vault_profit, receipt.stability_profit)
        log.info(f"BUY {trade_id[:8]} {reserve_id}/{epoch_id}: {amount_in} RA -> "
                 f"{receipt.amount_out} DS (rollover={receipt.rollover_out} "
                 f"reserve={receipt.reserve_out} curve={receipt.curve_out}, "
                 f"refund={receipt.refunded_excess} CT)")
        return receipt

    def sell(self, reserve_id: str, epoch_id: int, amount_in: int, min_out: int,
             caller: str) -> TradeReceipt:
        """
        Sell DS for RA through the venue.

        Args:
            reserve_id: Reserve to trade
            epoch_id: Epoch to trade
            amount_in: DS sold (base units); pulled from caller's allowance
            min_out: Minimum RA accepted
            caller: Seller, receives the RA

        Returns:
            TradeReceipt; amount_out is the RA received
        """
        return self._sell(reserve_id, epoch_id, amount_in, min_out, caller)

    def sell_with_permit(self, reserve_id: str, epoch_id: int, amount_in: int, min_out: int,
                         caller: str, permit: Permit) -> TradeReceipt:
        """sell(), with the DS allowance granted by a signed permit."""
        return self._sell(reserve_id, epoch_id, amount_in, min_out, caller, permit)

    def _sell(self, reserve_id: str, epoch_id: int, amount_in: int, min_out: int,
              caller: str, permit: Optional[Permit] = None) -> TradeReceipt:
        self._check_amount(amount_in)
        caller = normalize_address(caller)
        trade_id = new_trade_id()
        _, now = self.clock.now()

        with self._atomic(reserve_id, epoch_id) as ledger:
            pair = ledger.pair(epoch_id)
            assets = pair.assets
            if permit is not None:
                self._apply_permit(assets.ds, permit)
            self.custody.transfer(assets.ds, caller, self.address, amount_in,
                                  spender=self.address)

            ctx = CallbackContext(
                trade_id=trade_id,
                side=TradeSide.SELL,
                caller=caller,
                reserve_id=reserve_id,
                epoch_id=epoch_id,
                assets=assets,
                borrowed_amount=amount_in,
                provided_amount=amount_in,
                venue=self.venue.pool_address(assets.ra, assets.ct),
            )
            outcome = self.settlement.execute(ctx, self.venue)

            receipt = self._receipt(trade_id, TradeSide.SELL, reserve_id, epoch_id, amount_in)
            receipt.amount_out = outcome.realized_amount
            receipt.curve_out = outcome.realized_amount
            receipt.borrowed = amount_in
            receipt.repayment = outcome.repayment
            if receipt.amount_out < min_out:
                raise InsufficientOutput(receipt.amount_out, min_out)

            self.hiya.record_trade(pair, TradeSide.SELL, amount_in, receipt.amount_out,
                                   ledger.state.decay_discount_rate_in_days, now)
            self.custody.transfer(assets.ra, self.address, caller, receipt.amount_out)

        log.info(f"SELL {trade_id[:8]} {reserve_id}/{epoch_id}: {amount_in} DS -> "
                 f"{receipt.amount_out} RA")
        return receipt

    def _apply_permit(self, asset: str, permit: Permit):
        if self.permits is None:
            raise PermitNotSupported("Router has no permit verifier")
        self.permits.apply(asset, permit, self.address)

    def settlement_callback(self, sender: str, context: str, payment_amount: int,
                            payment_asset: str, venue: str):
        """Venue callback entry point."""
        return self.settlement.settlement_callback(sender, context, payment_amount,
                                                   payment_asset, venue)

    # ═══════════════════════════════════════════════════════════════════════
    # PREVIEW
    # ═══════════════════════════════════════════════════════════════════════

    def preview_buy(self, reserve_id: str, epoch_id: int, amount_in: int) -> TradeReceipt:
        """Price a buy without changing any state."""
        self._check_amount(amount_in)
        ledger = self._ledger(reserve_id)
        block, now = self.clock.now()
        with self._lock(reserve_id, epoch_id):
            saved = ledger.snapshot(epoch_id)
            try:
                plan = self._plan_buy(ledger, epoch_id, amount_in, block, now)
                pair = ledger.pair(epoch_id)
                repayment = 0
                if plan.curve_out:
                    repayment = self.venue.quote_amount_in(pair.assets.ra, pair.assets.ct,
                                                           plan.borrowed)
            finally:
                ledger.restore(saved)

        receipt = self._receipt("preview", TradeSide.BUY, reserve_id, epoch_id, amount_in)
        receipt.rollover_out = plan.rollover.ds_out
        receipt.reserve_out = plan.reserve_out
        receipt.curve_out = plan.curve_out
        receipt.amount_out = plan.internal_out + plan.curve_out
        receipt.borrowed = plan.borrowed
        receipt.repayment = repayment
        receipt.refunded_excess = max(plan.curve_out - repayment, 0)
        receipt.vault_profit, receipt.stability_profit = plan.profit_split()
        return receipt

    def preview_sell(self, reserve_id: str, epoch_id: int, amount_in: int) -> TradeReceipt:
        """Price a sell without changing any state."""
        self._check_amount(amount_in)
        pair = self._ledger(reserve_id).pair(epoch_id)
        repayment = self.venue.quote_amount_in(pair.assets.ct, pair.assets.ra, amount_in)
        if repayment > amount_in:
            raise InsufficientLiquidity(f"Repayment {repayment} RA exceeds {amount_in} redeemed")

        receipt = self._receipt("preview", TradeSide.SELL, reserve_id, epoch_id, amount_in)
        receipt.amount_out = amount_in - repayment
        receipt.curve_out = receipt.amount_out
        receipt.borrowed = amount_in
        receipt.repayment = repayment
        return receipt

    # ═══════════════════════════════════════════════════════════════════════
    # RESERVES
    # ═══════════════════════════════════════════════════════════════════════

    def add_reserve(self, reserve_id: str, epoch_id: int, amount: int,
                    pool: ReservePool, provider: str) -> int:
        """
        Deposit DS into a pool's reserve. The DS is pulled from provider's
        allowance to the router.

        Returns:
            New balance of the pool
        """
        self._check_amount(amount)
        with self._atomic(reserve_id, epoch_id) as ledger:
            ds = ledger.pair(epoch_id).assets.ds
            self.custody.transfer(ds, provider, self.address, amount, spender=self.address)
            return ledger.add_reserve(epoch_id, amount, pool)

    def empty_reserve(self, reserve_id: str, epoch_id: int, pool: ReservePool,
                      recipient: str, amount: Optional[int] = None) -> int:
        """Withdraw DS from one pool to recipient. Returns the amount withdrawn."""
        with self._atomic(reserve_id, epoch_id) as ledger:
            removed = ledger.empty_reserve(epoch_id, pool, amount)
            ds = ledger.pair(epoch_id).assets.ds
            self.custody.transfer(ds, self.address, recipient, removed)
            return removed

    # ═══════════════════════════════════════════════════════════════════════
    # EPOCHS & POLICY
    # ═══════════════════════════════════════════════════════════════════════

    def on_new_epoch(self, reserve_id: str, prev_epoch: Optional[int], new_epoch: int,
                     assets: EpochAssets, issued_at: int, expiry: int,
                     rollover_window_blocks: Optional[int] = None) -> EpochAssetPair:
        """
        Start a new epoch.

        The previous epoch's HIYA becomes the reserve's rollover price when
        that epoch saw volume; otherwise the last HIYA is kept. The rollover
        window opens now and lasts rollover_window_blocks.
        """
        window = self.config.rollover_window_blocks if rollover_window_blocks is None \
            else rollover_window_blocks
        if window < 0:
            raise ValueError(f"Rollover window must be >= 0, got {window}")
        if expiry <= issued_at:
            raise ValueError(f"Expiry {expiry} must be after issuance {issued_at}")

        with self._locks_guard:
            ledger = self.ledgers.get(reserve_id)
            if ledger is None:
                ledger = ReserveLedger(reserve_id, dust_floor=self.config.dust_floor)
                self.ledgers[reserve_id] = ledger
                self.rollovers[reserve_id] = RolloverSaleEngine(ledger)
            if ledger.has_epoch(new_epoch):
                raise ValueError(f"Epoch {new_epoch} already exists for {reserve_id}")
            if prev_epoch is not None and not ledger.has_epoch(prev_epoch):
                raise KeyError(f"Unknown epoch {prev_epoch} for reserve {reserve_id}")
            new_lock = self._locks.setdefault((reserve_id, new_epoch), threading.RLock())

        with new_lock:
            if prev_epoch is not None:
                with self._lock(reserve_id, prev_epoch):
                    prev = ledger.pair(prev_epoch)
                    if prev.cumulative_volume > 0:
                        ledger.state.hiya = self.hiya.effective_hiya(prev)

            block = self.clock.block_number()
            pair = ledger.create_epoch(new_epoch, assets, issued_at, expiry, block)
            ledger.state.rollover_end_block = block + window

        log.info(f"Reserve {reserve_id}: epoch {prev_epoch} -> {new_epoch}, "
                 f"hiya={ledger.state.hiya}, rollover until block {ledger.state.rollover_end_block}")
        return pair

    def set_decay_discount_rate(self, reserve_id: str, rate_in_days: int):
        self._ledger(reserve_id).set_decay_discount_rate(rate_in_days)

    def set_sell_pressure_cap(self, reserve_id: str, percent: int):
        self._ledger(reserve_id).set_sell_pressure_cap(percent)

    def set_gradual_sale_disabled(self, reserve_id: str, disabled: bool):
        self._ledger(reserve_id).set_gradual_sale_disabled(disabled)

    # ═══════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════

    def current_hiya(self, reserve_id: str) -> int:
        """HIYA used for the current rollover sale (18 decimals)."""
        return self._ledger(reserve_id).state.hiya

    def epoch_hiya(self, reserve_id: str, epoch_id: int) -> int:
        """Running HIYA of an epoch from its trades so far."""
        return self.hiya.effective_hiya(self._ledger(reserve_id).pair(epoch_id))

    def rollover_window_end(self, reserve_id: str) -> int:
        return self._ledger(reserve_id).state.rollover_end_block

    def is_rollover_sale(self, reserve_id: str) -> bool:
        ledger = self._ledger(reserve_id)
        epoch_id = ledger.state.current_epoch
        if epoch_id is None:
            return False
        return self.rollovers[reserve_id].is_active(epoch_id, self.clock.block_number())

    def current_price_ratio(self, reserve_id: str, epoch_id: int) -> Tuple[int, int]:
        """
        Venue price ratios (18 decimals).

        Returns:
            (RA price in CT, CT price in RA)
        """
        pair = self._ledger(reserve_id).pair(epoch_id)
        ra_reserve, ct_reserve = self.venue.get_reserves(pair.assets.ra, pair.assets.ct)
        return mul_div(ct_reserve, WAD, ra_reserve), mul_div(ra_reserve, WAD, ct_reserve)

    def reserve_state(self, reserve_id: str) -> dict:
        return self._ledger(reserve_id).state.to_dict()
