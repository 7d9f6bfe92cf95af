"""Shared fixtures: a router wired to in-memory custody, issuer and venue."""

import pytest

from dsrouter import (
    EpochAssets, FlashSwapRouter, InMemoryCustody, InMemoryIssuer, ManualClock,
    PermitVerifier, RecordingProfitSink, ReservePool, YieldSpaceVenue,
)
from dsrouter.dex_types import derive_address

WAD = 10 ** 18
DAY = 86400

NOW = 1_700_000_000
ISSUED_AT = NOW - 15 * DAY
EXPIRY = NOW + 15 * DAY          # 1 - t == 0.5 at NOW
START_BLOCK = 1000

RESERVE = "reserve-1"

# Venue holds more CT than RA so CT trades below par
VENUE_RA = 900 * WAD
VENUE_CT = 1100 * WAD


def epoch_assets(epoch_id: int) -> EpochAssets:
    return EpochAssets(
        ds=derive_address(f"test.ds.{epoch_id}"),
        ct=derive_address(f"test.ct.{epoch_id}"),
        ra=derive_address("test.ra"),
    )


class Market:
    """Everything a router test needs, seeded with one epoch."""

    def __init__(self, fee_bps: int = 0):
        self.clock = ManualClock(block=START_BLOCK, timestamp=NOW)
        self.custody = InMemoryCustody()
        self.issuer = InMemoryIssuer(self.custody)
        self.venue = YieldSpaceVenue(self.custody, self.clock, fee_bps=fee_bps)
        self.vault = RecordingProfitSink("vault")
        self.stability = RecordingProfitSink("stability")
        self.permits = PermitVerifier(self.custody, self.clock, chain_id=1)
        self.router = FlashSwapRouter(self.custody, self.issuer, self.venue, self.clock,
                                      self.vault, self.stability, permits=self.permits)

        self.lp = derive_address("test.lp")
        self.alice = derive_address("test.alice")
        self.assets = {}
        self.open_epoch(1, None)

    def open_epoch(self, epoch_id: int, prev_epoch, window: int = 100,
                   venue_ra: int = VENUE_RA, venue_ct: int = VENUE_CT) -> EpochAssets:
        assets = epoch_assets(epoch_id)
        self.assets[epoch_id] = assets
        self.router.on_new_epoch(RESERVE, prev_epoch, epoch_id, assets, ISSUED_AT, EXPIRY,
                                 rollover_window_blocks=window)
        self.venue.register_pool(assets.ra, assets.ct, ISSUED_AT, EXPIRY)

        # LP mints CT + DS against RA and seeds the venue
        self.custody.mint(assets.ra, self.lp, venue_ra + venue_ct)
        self.issuer.deposit(assets, self.lp, venue_ct)
        self.venue.add_liquidity(self.lp, assets.ra, assets.ct, venue_ra, venue_ct)
        self.custody.authorize_allowance(assets.ds, self.lp, self.router.address, 10 ** 30)
        return assets

    def seed_reserve(self, epoch_id: int, vault: int, stability: int):
        if vault:
            self.router.add_reserve(RESERVE, epoch_id, vault, ReservePool.VAULT, self.lp)
        if stability:
            self.router.add_reserve(RESERVE, epoch_id, stability, ReservePool.STABILITY, self.lp)

    def fund(self, holder: str, ra: int, epoch_id: int = 1):
        assets = self.assets[epoch_id]
        self.custody.mint(assets.ra, holder, ra)
        self.custody.authorize_allowance(assets.ra, holder, self.router.address, ra)

    def give_ds(self, holder: str, amount: int, epoch_id: int = 1):
        """Mint DS (and CT) to holder through the issuer and approve the router."""
        assets = self.assets[epoch_id]
        self.custody.mint(assets.ra, holder, amount)
        self.issuer.deposit(assets, holder, amount)
        self.custody.authorize_allowance(assets.ds, holder, self.router.address, amount)

    @property
    def pool(self) -> str:
        return self.venue.pool_address(self.assets[1].ra, self.assets[1].ct)

    def balances(self) -> dict:
        return {key: value for key, value in self.custody.balances.items() if value}

    def pair(self, epoch_id: int = 1):
        return self.router.ledgers[RESERVE].pair(epoch_id)


@pytest.fixture
def market():
    return Market()


@pytest.fixture
def fee_market():
    # 50% fee: venue repayment always exceeds what a buy mints
    return Market(fee_bps=5000)
