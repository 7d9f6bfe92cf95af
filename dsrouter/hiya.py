"""
DS Router - HIYA Accumulator

Volume-weighted, time-decayed implied yield of an epoch. Every settled trade
posts its realized rate once:

    cumulative_rate_volume += volume * rate * decay(t)
    cumulative_volume      += volume * decay(t)

and the epoch's HIYA is the ratio of the two sums. The sums live on the
EpochAssetPair so they are rolled back together with the reserves.
"""

import logging

from .dex_types import EpochAssetPair, TradeSide
from .errors import InvalidDecay
from .fixed_point import PERCENT_BASE, SECONDS_PER_DAY, WAD, mul_div

log = logging.getLogger(__name__)


def decay_factor(decay_discount_rate_in_days: int, issued_at: int, now: int) -> int:
    """
    Weight of a trade made `now` seconds into the epoch.

    Args:
        decay_discount_rate_in_days: Percent lost per day (100e18 == 100%)
        issued_at: Epoch issuance timestamp
        now: Trade timestamp

    Returns:
        Decay factor on the percent scale (100e18 == no decay)

    Raises:
        InvalidDecay: The factor would be negative
    """
    elapsed = max(now - issued_at, 0)
    discount = mul_div(decay_discount_rate_in_days, elapsed, SECONDS_PER_DAY)
    if discount > PERCENT_BASE:
        raise InvalidDecay(
            f"Decay rate {decay_discount_rate_in_days}/day over {elapsed}s exceeds 100%"
        )
    return PERCENT_BASE - discount


def realized_rate(side: TradeSide, amount_in: int, amount_out: int) -> int:
    """
    Signed 18-decimal rate of one trade.

    BUY (RA in, DS out): DS received per RA, minus one.
    SELL (DS in, RA out): DS given per RA received, minus one.
    """
    if side == TradeSide.BUY:
        numerator, denominator = amount_out, amount_in
    else:
        numerator, denominator = amount_in, amount_out
    return mul_div(numerator, WAD, denominator) - WAD


class HiyaAccumulator:
    """
    Posts trade rates into the running sums of an epoch.

    Usage:
        hiya = HiyaAccumulator()
        hiya.record_trade(pair, TradeSide.BUY, ra_in, ds_out,
                          decay_rate, now)
        rate = hiya.effective_hiya(pair)
    """

    def record_trade(self, pair: EpochAssetPair, side: TradeSide, amount_in: int,
                     amount_out: int, decay_discount_rate_in_days: int, now: int) -> int:
        """
        Post one settled trade. Volume is measured in RA.

        Args:
            pair: Epoch being traded
            side: Trade direction
            amount_in: Amount paid in (RA for buys, DS for sells)
            amount_out: Amount received (DS for buys, RA for sells)
            decay_discount_rate_in_days: Reserve decay policy
            now: Trade timestamp

        Returns:
            Rate that was posted
        """
        if amount_in <= 0 or amount_out <= 0:
            return 0

        decay = decay_factor(decay_discount_rate_in_days, pair.issued_at, now)
        rate = realized_rate(side, amount_in, amount_out)
        volume = amount_in if side == TradeSide.BUY else amount_out
        weighted_volume = mul_div(volume, decay, PERCENT_BASE)

        pair.cumulative_volume += weighted_volume
        pair.cumulative_rate_volume += mul_div(weighted_volume, rate, WAD)
        log.debug(f"HIYA epoch {pair.epoch_id}: rate={rate} volume={weighted_volume}")
        return rate

    @staticmethod
    def effective_hiya(pair: EpochAssetPair) -> int:
        """Running HIYA of an epoch, 0 with no recorded volume."""
        if pair.cumulative_volume == 0:
            return 0
        return mul_div(pair.cumulative_rate_volume, WAD, pair.cumulative_volume)
