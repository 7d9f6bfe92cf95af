"""End-to-end tests of the flash swap router."""

import logging
import threading

import pytest

from dsrouter.dex_types import ReservePool, TradeSide, derive_address
from dsrouter.errors import (
    CallbackOriginMismatch, InsufficientLiquidity, InsufficientOutput, TransferFailed,
)
from dsrouter.fixed_point import mul_div

from conftest import EXPIRY, ISSUED_AT, RESERVE, WAD, epoch_assets

# ═══════════════════════════════════════════════════════════════════════════════
# BUY
# ═══════════════════════════════════════════════════════════════════════════════


def test_buy_through_curve(market):
    assets = market.assets[1]
    market.fund(market.alice, 10 * WAD)

    receipt = market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)

    assert receipt.side == TradeSide.BUY
    assert 70 * WAD < receipt.amount_out < 90 * WAD
    assert receipt.curve_out == receipt.amount_out
    assert receipt.rollover_out == receipt.reserve_out == 0
    assert receipt.borrowed == receipt.amount_out - 10 * WAD
    assert receipt.repayment + receipt.refunded_excess == receipt.curve_out

    custody = market.custody
    assert custody.balance_of(assets.ds, market.alice) == receipt.amount_out
    assert custody.balance_of(assets.ct, market.alice) == receipt.refunded_excess
    assert custody.balance_of(assets.ra, market.alice) == 0
    assert custody.balance_of(assets.ra, market.router.address) == 0
    assert market.vault.received == [] and market.stability.received == []


def test_preview_matches_buy(market):
    market.fund(market.alice, 10 * WAD)
    before = market.balances()

    preview = market.router.preview_buy(RESERVE, 1, 10 * WAD)
    assert market.balances() == before

    receipt = market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)
    assert receipt.amount_out == preview.amount_out
    assert receipt.refunded_excess == preview.refunded_excess
    assert receipt.repayment == preview.repayment


def test_preview_logs_no_trade(market, caplog):
    market.open_epoch(2, prev_epoch=1)
    market.router.ledgers[RESERVE].state.hiya = WAD // 10
    market.seed_reserve(2, 60 * WAD, 40 * WAD)

    with caplog.at_level(logging.INFO, logger="dsrouter"):
        preview = market.router.preview_buy(RESERVE, 2, 10 * WAD)

    assert preview.rollover_out > 0
    assert caplog.records == []


def test_buy_fills_from_reserve_first(market):
    market.seed_reserve(1, 600 * WAD, 400 * WAD)
    market.fund(market.alice, 10 * WAD)

    receipt = market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)

    assert receipt.reserve_out == receipt.amount_out
    assert receipt.curve_out == 0
    assert receipt.vault_profit + receipt.stability_profit == 10 * WAD
    assert abs(receipt.vault_profit - 6 * WAD) <= 1

    pair = market.pair(1)
    assert pair.total_reserve == 1_000 * WAD - receipt.amount_out
    assert market.vault.received == [(1, receipt.vault_profit)]
    assert market.stability.received == [(1, receipt.stability_profit)]
    ra = market.assets[1].ra
    assert market.custody.balance_of(ra, market.vault.address) == receipt.vault_profit
    assert market.custody.balance_of(ra, market.stability.address) == receipt.stability_profit


def test_sell_pressure_cap_sends_rest_to_curve(market):
    market.seed_reserve(1, 600 * WAD, 400 * WAD)
    market.router.set_sell_pressure_cap(RESERVE, 50 * WAD)
    market.fund(market.alice, 10 * WAD)

    receipt = market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)

    assert receipt.reserve_out > 0
    assert receipt.curve_out > 0
    assert receipt.amount_out == receipt.reserve_out + receipt.curve_out
    assert 0 < receipt.vault_profit + receipt.stability_profit < 10 * WAD


def test_gradual_sale_disabled_skips_reserve(market):
    market.seed_reserve(1, 600 * WAD, 400 * WAD)
    market.router.set_gradual_sale_disabled(RESERVE, True)
    market.fund(market.alice, 10 * WAD)

    receipt = market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)

    assert receipt.reserve_out == 0
    assert market.pair(1).total_reserve == 1_000 * WAD


# ═══════════════════════════════════════════════════════════════════════════════
# ATOMICITY
# ═══════════════════════════════════════════════════════════════════════════════


def test_insufficient_liquidity_rolls_back_everything(fee_market):
    market = fee_market
    market.fund(market.alice, 10 * WAD)
    balances = market.balances()
    pair = market.pair(1).to_dict()

    with pytest.raises(InsufficientLiquidity):
        market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)

    assert market.balances() == balances
    assert market.pair(1).to_dict() == pair
    assert len(market.router.settlement.registry) == 0


def test_settlement_failure_restores_reserve_drain(fee_market):
    market = fee_market
    market.seed_reserve(1, 600 * WAD, 400 * WAD)
    market.router.set_sell_pressure_cap(RESERVE, 50 * WAD)
    market.fund(market.alice, 10 * WAD)
    balances = market.balances()
    pair = market.pair(1).to_dict()

    # the reserve stage fills part of the buy before the venue is called
    preview = market.router.preview_buy(RESERVE, 1, 10 * WAD)
    assert preview.reserve_out > 0
    assert preview.repayment > preview.curve_out

    with pytest.raises(InsufficientLiquidity):
        market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)

    assert market.balances() == balances
    assert market.pair(1).to_dict() == pair
    assert market.pair(1).total_reserve == 1_000 * WAD
    assert market.vault.received == [] and market.stability.received == []


def test_slippage_unwinds_reserve_fill(market):
    market.seed_reserve(1, 600 * WAD, 400 * WAD)
    market.fund(market.alice, 10 * WAD)
    balances = market.balances()
    pair = market.pair(1).to_dict()

    with pytest.raises(InsufficientOutput) as exc:
        market.router.buy(RESERVE, 1, 10 * WAD, min_out=1_000 * WAD, caller=market.alice)

    assert exc.value.min_out == 1_000 * WAD
    assert market.balances() == balances
    assert market.pair(1).to_dict() == pair
    assert market.vault.received == []


def test_missing_allowance_fails_cleanly(market):
    market.custody.mint(market.assets[1].ra, market.alice, 10 * WAD)
    with pytest.raises(TransferFailed):
        market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)


def test_invalid_inputs(market):
    with pytest.raises(ValueError):
        market.router.buy(RESERVE, 1, 0, min_out=0, caller=market.alice)
    with pytest.raises(KeyError):
        market.router.buy("nope", 1, WAD, min_out=0, caller=market.alice)


def test_concurrent_buys_on_one_epoch(market):
    buyers = [derive_address(f"test.buyer.{i}") for i in range(4)]
    for buyer in buyers:
        market.fund(buyer, WAD)
    receipts, errors = [], []

    def run(buyer):
        try:
            receipts.append(market.router.buy(RESERVE, 1, WAD, min_out=0, caller=buyer))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(b,)) for b in buyers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    ds = market.assets[1].ds
    assert sum(market.custody.balance_of(ds, b) for b in buyers) == \
        sum(r.amount_out for r in receipts)


def test_unknown_epoch_gets_no_lock(market):
    with pytest.raises(KeyError):
        market.router.buy(RESERVE, 99, WAD, min_out=0, caller=market.alice)
    assert (RESERVE, 99) not in market.router._locks


def test_concurrent_first_issuance_shares_one_ledger(market):
    router = market.router
    barrier = threading.Barrier(4)
    errors = []

    def issue(epoch_id):
        barrier.wait()
        try:
            router.on_new_epoch("reserve-2", None, epoch_id, epoch_assets(epoch_id),
                                ISSUED_AT, EXPIRY)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=issue, args=(i,)) for i in range(1, 5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    ledger = router.ledgers["reserve-2"]
    assert sorted(ledger.state.epochs) == [1, 2, 3, 4]
    assert router.rollovers["reserve-2"].ledger is ledger


def test_duplicate_epoch_rejected(market):
    with pytest.raises(ValueError):
        market.router.on_new_epoch(RESERVE, None, 1, epoch_assets(1), ISSUED_AT, EXPIRY)
    with pytest.raises(KeyError):
        market.router.on_new_epoch(RESERVE, 7, 8, epoch_assets(8), ISSUED_AT, EXPIRY)
    assert (RESERVE, 8) not in market.router._locks


# ═══════════════════════════════════════════════════════════════════════════════
# CALLBACK AUTHENTICATION
# ═══════════════════════════════════════════════════════════════════════════════


def test_callback_without_open_trade_rejected(market):
    with pytest.raises(CallbackOriginMismatch):
        market.router.settlement_callback(market.router.address, "forged", WAD,
                                          market.assets[1].ct, market.pool)


def test_callback_from_foreign_sender_rejected(market):
    with pytest.raises(CallbackOriginMismatch):
        market.router.settlement_callback(market.alice, "forged", WAD,
                                          market.assets[1].ct, market.pool)


class ReplayingVenue:
    """Venue wrapper that calls back twice with the same context."""

    def __init__(self, venue):
        self.venue = venue

    def __getattr__(self, name):
        return getattr(self.venue, name)

    def borrow_and_settle(self, asset_a, asset_b, amount_a, amount_b, context, receiver):
        outcome = self.venue.borrow_and_settle(asset_a, asset_b, amount_a, amount_b,
                                               context, receiver)
        receiver.settlement_callback(receiver.address, context, 0, asset_b,
                                     self.venue.pool_address(asset_a, asset_b))
        return outcome


def test_context_is_single_use(market):
    market.router.venue = ReplayingVenue(market.venue)
    market.fund(market.alice, 10 * WAD)
    balances = market.balances()

    with pytest.raises(CallbackOriginMismatch):
        market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)
    assert market.balances() == balances


# ═══════════════════════════════════════════════════════════════════════════════
# SELL
# ═══════════════════════════════════════════════════════════════════════════════


def test_sell_through_venue(market):
    assets = market.assets[1]
    market.give_ds(market.alice, 5 * WAD)

    preview = market.router.preview_sell(RESERVE, 1, 5 * WAD)
    receipt = market.router.sell(RESERVE, 1, 5 * WAD, min_out=0, caller=market.alice)

    assert receipt.amount_out == preview.amount_out
    assert 0 < receipt.amount_out < 5 * WAD
    assert receipt.repayment + receipt.amount_out == 5 * WAD
    assert market.custody.balance_of(assets.ra, market.alice) == receipt.amount_out
    assert market.custody.balance_of(assets.ds, market.alice) == 0
    assert market.router.epoch_hiya(RESERVE, 1) > 0


def test_sell_larger_than_venue_rolls_back(market):
    assets = market.assets[1]
    market.give_ds(market.alice, 2_000 * WAD)
    balances = market.balances()

    with pytest.raises(InsufficientLiquidity):
        market.router.sell(RESERVE, 1, 2_000 * WAD, min_out=0, caller=market.alice)

    assert market.balances() == balances
    assert market.custody.balance_of(assets.ds, market.alice) == 2_000 * WAD


def test_sell_slippage(market):
    market.give_ds(market.alice, 5 * WAD)
    with pytest.raises(InsufficientOutput):
        market.router.sell(RESERVE, 1, 5 * WAD, min_out=5 * WAD, caller=market.alice)
    assert market.pair(1).cumulative_volume == 0


# ═══════════════════════════════════════════════════════════════════════════════
# EPOCHS & ROLLOVER
# ═══════════════════════════════════════════════════════════════════════════════


def rolled_market(market):
    market.fund(market.alice, 10 * WAD)
    market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice)
    market.open_epoch(2, prev_epoch=1, window=100)
    market.seed_reserve(2, 60 * WAD, 40 * WAD)
    return market


def test_new_epoch_carries_hiya(market):
    rolled_market(market)
    router = market.router
    assert router.current_hiya(RESERVE) == router.epoch_hiya(RESERVE, 1)
    assert router.current_hiya(RESERVE) > 0
    assert router.rollover_window_end(RESERVE) == market.clock.block_number() + 100
    assert router.is_rollover_sale(RESERVE)


def test_rollover_sale_fills_first(market):
    rolled_market(market)
    hiya = market.router.current_hiya(RESERVE)
    market.fund(market.alice, WAD, epoch_id=2)

    receipt = market.router.buy(RESERVE, 2, WAD, min_out=0, caller=market.alice)

    assert receipt.rollover_out == mul_div(WAD, WAD + hiya, WAD)
    assert receipt.amount_out == receipt.rollover_out
    assert receipt.curve_out == 0
    assert receipt.vault_profit + receipt.stability_profit == WAD
    assert market.vault.received == [(2, receipt.vault_profit)]


def test_rollover_overflow_goes_to_curve(market):
    rolled_market(market)
    market.fund(market.alice, 50 * WAD, epoch_id=2)

    receipt = market.router.buy(RESERVE, 2, 50 * WAD, min_out=0, caller=market.alice)

    assert receipt.rollover_out == 100 * WAD
    assert receipt.reserve_out == 0
    assert receipt.curve_out > 0
    assert market.pair(2).total_reserve == 0


def test_rollover_ends_with_window(market):
    rolled_market(market)
    market.clock.advance(blocks=100)
    assert not market.router.is_rollover_sale(RESERVE)
    market.fund(market.alice, WAD, epoch_id=2)

    receipt = market.router.buy(RESERVE, 2, WAD, min_out=0, caller=market.alice)
    assert receipt.rollover_out == 0


def test_hiya_kept_when_previous_epoch_idle(market):
    rolled_market(market)
    hiya = market.router.current_hiya(RESERVE)
    market.open_epoch(3, prev_epoch=2)
    assert market.router.current_hiya(RESERVE) == hiya


# ═══════════════════════════════════════════════════════════════════════════════
# RESERVES & QUERIES
# ═══════════════════════════════════════════════════════════════════════════════


def test_empty_reserve_returns_ds(market):
    market.seed_reserve(1, 600 * WAD, 400 * WAD)
    owner = derive_address("test.vault-owner")

    removed = market.router.empty_reserve(RESERVE, 1, ReservePool.VAULT, owner)

    assert removed == 600 * WAD
    assert market.custody.balance_of(market.assets[1].ds, owner) == 600 * WAD
    assert market.pair(1).stability_reserve == 400 * WAD


def test_current_price_ratio(market):
    ra_ratio, ct_ratio = market.router.current_price_ratio(RESERVE, 1)
    assert ra_ratio == mul_div(1_100 * WAD, WAD, 900 * WAD)
    assert ct_ratio == mul_div(900 * WAD, WAD, 1_100 * WAD)


def test_receipt_serializes(market):
    market.fund(market.alice, 10 * WAD)
    data = market.router.buy(RESERVE, 1, 10 * WAD, min_out=0, caller=market.alice).to_dict()
    assert data["side"] == "buy"
    assert data["amount_out"] > 0
