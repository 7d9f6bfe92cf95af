"""Tests for permit-authorized trades."""

from dataclasses import replace

import pytest
from eth_account import Account

from dsrouter.errors import InsufficientOutput, InvalidSignature, PermitNotSupported
from dsrouter.permit import sign_permit

from conftest import NOW, RESERVE, WAD

PRIVATE_KEY = "0x" + "11" * 32


@pytest.fixture
def signer(market):
    ra = market.assets[1].ra
    market.permits.register_asset(ra, "Redemption Asset")
    owner = Account.from_key(PRIVATE_KEY).address
    market.custody.mint(ra, owner, 10 * WAD)
    return owner


def permit_for(market, value=10 * WAD, deadline=NOW + 3600):
    return sign_permit(market.permits, market.assets[1].ra, PRIVATE_KEY,
                       market.router.address, value, deadline)


def test_buy_with_permit(market, signer):
    permit = permit_for(market)
    receipt = market.router.buy_with_permit(RESERVE, 1, 10 * WAD, 0, signer, permit)

    assert receipt.amount_out > 0
    assert market.custody.balance_of(market.assets[1].ds, signer) == receipt.amount_out
    assert market.custody.nonce_of(market.assets[1].ra, signer) == 1


def test_permit_cannot_be_replayed(market, signer):
    permit = permit_for(market, value=5 * WAD)
    market.router.buy_with_permit(RESERVE, 1, 5 * WAD, 0, signer, permit)
    with pytest.raises(InvalidSignature):
        market.router.buy_with_permit(RESERVE, 1, 5 * WAD, 0, signer, permit)


def test_expired_permit(market, signer):
    permit = permit_for(market, deadline=NOW - 1)
    with pytest.raises(InvalidSignature):
        market.router.buy_with_permit(RESERVE, 1, 10 * WAD, 0, signer, permit)


def test_permit_signed_by_someone_else(market, signer):
    permit = replace(permit_for(market), owner=market.alice)
    with pytest.raises(InvalidSignature):
        market.router.buy_with_permit(RESERVE, 1, 10 * WAD, 0, market.alice, permit)


def test_tampered_value(market, signer):
    permit = replace(permit_for(market, value=WAD), value=10 * WAD)
    with pytest.raises(InvalidSignature):
        market.router.buy_with_permit(RESERVE, 1, 10 * WAD, 0, signer, permit)


def test_unregistered_asset(market, signer):
    market.give_ds(signer, WAD)
    permit = permit_for(market)
    with pytest.raises(PermitNotSupported):
        market.router.sell_with_permit(RESERVE, 1, WAD, 0, signer, permit)


def test_failed_trade_restores_nonce(market, signer):
    permit = permit_for(market)
    with pytest.raises(InsufficientOutput):
        market.router.buy_with_permit(RESERVE, 1, 10 * WAD, 10 ** 6 * WAD, signer, permit)

    ra = market.assets[1].ra
    assert market.custody.nonce_of(ra, signer) == 0
    assert market.custody.allowance(ra, signer, market.router.address) == 0
    # the same permit is still usable
    market.router.buy_with_permit(RESERVE, 1, 10 * WAD, 0, signer, permit)
