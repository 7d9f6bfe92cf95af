"""
DS Router - Rollover Sale

For a window of blocks after a new epoch starts, DS held in reserve is sold
to buyers at a price derived from the previous epoch's HIYA before any curve
pricing. Proceeds go back to the pool owners pro rata to what each sold.
"""

import logging
from dataclasses import dataclass

from .errors import InvalidDomain
from .fixed_point import WAD, mul_div
from .reserve_ledger import EMPTY_DRAIN, ReserveDrain, ReserveLedger, split_drain

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloverFill:
    """Result of the rollover stage of a buy."""
    ds_out: int = 0
    ra_used: int = 0
    ra_left: int = 0
    drained: ReserveDrain = EMPTY_DRAIN
    vault_proceeds: int = 0
    stability_proceeds: int = 0

    @property
    def filled(self) -> bool:
        return self.ds_out > 0


class RolloverSaleEngine:
    """
    Rollover sale against one reserve ledger.

    Usage:
        engine = RolloverSaleEngine(ledger)
        if engine.is_active(epoch_id, block):
            fill = engine.apply(epoch_id, ra_in, block)
    """

    def __init__(self, ledger: ReserveLedger):
        self.ledger = ledger

    def is_active(self, epoch_id: int, block: int) -> bool:
        state = self.ledger.state
        if epoch_id == state.first_epoch:
            return False
        if block >= state.rollover_end_block:
            return False
        if state.hiya == 0:
            return False
        return self.ledger.pair(epoch_id).total_reserve > 0

    def quote(self, epoch_id: int, deposit: int, block: int) -> RolloverFill:
        """
        Price a rollover fill without touching the ledger.

        DS price is 1 / (1 + hiya) RA, so deposit RA buys deposit * (1 + hiya)
        DS, capped by the reserve. RA not needed for the capped amount is
        returned as ra_left.
        """
        if deposit <= 0 or not self.is_active(epoch_id, block):
            return RolloverFill(ra_left=max(deposit, 0))

        growth = WAD + self.ledger.state.hiya
        if growth <= 0:
            raise InvalidDomain(f"Rollover price undefined for hiya {self.ledger.state.hiya}")

        pair = self.ledger.pair(epoch_id)
        wanted = mul_div(deposit, growth, WAD)
        ds_out = min(wanted, pair.total_reserve)
        if ds_out == 0:
            return RolloverFill(ra_left=deposit)

        if ds_out < wanted:
            ra_used = min(mul_div(ds_out, WAD, growth, round_up=True), deposit)
        else:
            ra_used = deposit

        drained = split_drain(pair.vault_reserve, pair.stability_reserve, ds_out)
        vault_proceeds = mul_div(ra_used, drained.vault, drained.total)
        return RolloverFill(
            ds_out=ds_out,
            ra_used=ra_used,
            ra_left=deposit - ra_used,
            drained=drained,
            vault_proceeds=vault_proceeds,
            stability_proceeds=ra_used - vault_proceeds,
        )

    def apply(self, epoch_id: int, deposit: int, block: int) -> RolloverFill:
        """Quote, then drain the reserve for the quoted amount."""
        fill = self.quote(epoch_id, deposit, block)
        if not fill.filled:
            return fill

        self.ledger.drain(epoch_id, fill.ds_out)
        log.debug(f"Rollover {self.ledger.reserve_id}/{epoch_id}: {fill.ra_used} RA -> "
                 f"{fill.ds_out} DS, {fill.ra_left} RA left")
        return fill
