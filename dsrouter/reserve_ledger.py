"""
DS Router - Reserve Ledger

Keyed store of per-epoch DS reserves for one reserve. Two pools per epoch
(vault, stability pool) are drained proportionally before any external
liquidity is used.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .dex_types import EpochAssetPair, EpochAssets, ReservePool, ReserveState
from .fixed_point import PERCENT_BASE, mul_div, percent_of

log = logging.getLogger(__name__)

DEFAULT_DUST_FLOOR = 10 ** 12      # 1e-6 DS


@dataclass(frozen=True)
class ReserveDrain:
    """DS taken out of each pool by one drain."""
    vault: int = 0
    stability: int = 0

    @property
    def total(self) -> int:
        return self.vault + self.stability

    def __add__(self, other: "ReserveDrain") -> "ReserveDrain":
        return ReserveDrain(self.vault + other.vault, self.stability + other.stability)


EMPTY_DRAIN = ReserveDrain()


def split_drain(vault_reserve: int, stability_reserve: int, requested: int) -> ReserveDrain:
    """
    Proportional split of a drain between the two pools.

    Each share is rounded down; the rounding remainder (at most one unit) is
    taken from the larger pool so the split always sums to the drained total.

    Args:
        vault_reserve: Vault pool balance
        stability_reserve: Stability pool balance
        requested: DS wanted

    Returns:
        ReserveDrain summing to min(requested, total)
    """
    total = vault_reserve + stability_reserve
    amount = min(max(requested, 0), total)
    if amount == 0:
        return EMPTY_DRAIN

    vault_part = mul_div(amount, vault_reserve, total)
    stability_part = mul_div(amount, stability_reserve, total)
    remainder = amount - vault_part - stability_part
    if vault_reserve >= stability_reserve:
        vault_part += remainder
    else:
        stability_part += remainder
    return ReserveDrain(vault_part, stability_part)


class ReserveLedger:
    """
    Reserve ledger of one reserve.

    Usage:
        ledger = ReserveLedger("reserve-1")
        ledger.create_epoch(1, assets, issued_at=now, expiry=now + 86400)
        ledger.add_reserve(1, 600 * 10**18, ReservePool.VAULT)
        ledger.add_reserve(1, 400 * 10**18, ReservePool.STABILITY)
        drained = ledger.drain_reserve(1, 1000 * 10**18)
    """

    def __init__(self, reserve_id: str, dust_floor: int = DEFAULT_DUST_FLOOR,
                 state: Optional[ReserveState] = None):
        self.reserve_id = reserve_id
        self.dust_floor = dust_floor
        self.state = state or ReserveState(reserve_id=reserve_id)

    # ═══════════════════════════════════════════════════════════════════════
    # EPOCHS
    # ═══════════════════════════════════════════════════════════════════════

    def create_epoch(self, epoch_id: int, assets: EpochAssets, issued_at: int,
                     expiry: int, issued_block: int = 0) -> EpochAssetPair:
        """Register a new issuance epoch. The first one becomes first_epoch."""
        if epoch_id in self.state.epochs:
            raise ValueError(f"Epoch {epoch_id} already exists for {self.reserve_id}")
        if expiry <= issued_at:
            raise ValueError(f"Expiry {expiry} must be after issuance {issued_at}")

        pair = EpochAssetPair(
            epoch_id=epoch_id,
            assets=assets,
            issued_at=issued_at,
            expiry=expiry,
            issued_block=issued_block,
        )
        self.state.epochs[epoch_id] = pair
        if self.state.first_epoch is None:
            self.state.first_epoch = epoch_id
        self.state.current_epoch = epoch_id
        return pair

    def pair(self, epoch_id: int) -> EpochAssetPair:
        try:
            return self.state.epochs[epoch_id]
        except KeyError:
            raise KeyError(f"Unknown epoch {epoch_id} for reserve {self.reserve_id}")

    def has_epoch(self, epoch_id: int) -> bool:
        return epoch_id in self.state.epochs

    # ═══════════════════════════════════════════════════════════════════════
    # RESERVE MUTATIONS
    # ═══════════════════════════════════════════════════════════════════════

    def add_reserve(self, epoch_id: int, amount: int, pool: ReservePool) -> int:
        """
        Increase the named pool's balance.

        Returns:
            New balance of that pool
        """
        if amount <= 0:
            raise ValueError(f"Amount must be positive, got {amount}")
        pair = self.pair(epoch_id)
        if pool == ReservePool.VAULT:
            pair.vault_reserve += amount
        else:
            pair.stability_reserve += amount
        log.info(f"Reserve {self.reserve_id}/{epoch_id}: +{amount} DS to {pool.value}")
        return pair.balance_of(pool)

    def drain(self, epoch_id: int, requested: int) -> ReserveDrain:
        """Drain proportionally and return the per-pool split."""
        pair = self.pair(epoch_id)
        drained = split_drain(pair.vault_reserve, pair.stability_reserve, requested)
        if drained.total == 0:
            return EMPTY_DRAIN

        pair.vault_reserve -= drained.vault
        pair.stability_reserve -= drained.stability
        pair.vault_drained += drained.vault
        pair.stability_drained += drained.stability
        log.debug(f"Reserve {self.reserve_id}/{epoch_id}: drained vault={drained.vault} "
                  f"stability={drained.stability}")
        return drained

    def drain_reserve(self, epoch_id: int, requested: int) -> int:
        """
        Take up to `requested` DS out of the epoch's reserve.

        Args:
            epoch_id: Epoch to drain
            requested: DS wanted

        Returns:
            min(requested, total reserve); 0 (and no change) on an empty reserve
        """
        return self.drain(epoch_id, requested).total

    def empty_reserve(self, epoch_id: int, pool: ReservePool,
                      amount: Optional[int] = None) -> int:
        """
        Withdraw DS from one pool on behalf of its owner.

        Args:
            epoch_id: Epoch
            pool: Pool to withdraw from
            amount: DS to withdraw, whole balance if None

        Returns:
            DS removed
        """
        pair = self.pair(epoch_id)
        balance = pair.balance_of(pool)
        if amount is None:
            amount = balance
        if amount < 0 or amount > balance:
            raise ValueError(f"Cannot withdraw {amount} from {pool.value} balance {balance}")

        if pool == ReservePool.VAULT:
            pair.vault_reserve -= amount
        else:
            pair.stability_reserve -= amount
        log.info(f"Reserve {self.reserve_id}/{epoch_id}: -{amount} DS from {pool.value}")
        return amount

    # ═══════════════════════════════════════════════════════════════════════
    # POLICY
    # ═══════════════════════════════════════════════════════════════════════

    def sell_eligible_amount(self, epoch_id: int, curve_output: int) -> int:
        """
        DS that may be sold from reserve for a curve-priced output.

        min(total reserve, curve_output - cap% of curve_output); 0 when gradual
        sale is disabled or the result is below the dust floor.
        """
        if self.state.gradual_sale_disabled or curve_output <= 0:
            return 0
        pair = self.pair(epoch_id)
        held_back = percent_of(curve_output, self.state.sell_pressure_cap_percent)
        eligible = min(pair.total_reserve, curve_output - held_back)
        if eligible < self.dust_floor:
            return 0
        return eligible

    def set_decay_discount_rate(self, rate_in_days: int):
        if rate_in_days < 0:
            raise ValueError(f"Decay rate must be >= 0, got {rate_in_days}")
        self.state.decay_discount_rate_in_days = rate_in_days

    def set_sell_pressure_cap(self, percent: int):
        if not 0 <= percent <= PERCENT_BASE:
            raise ValueError(f"Sell pressure cap must be within 0-100%, got {percent}")
        self.state.sell_pressure_cap_percent = percent

    def set_gradual_sale_disabled(self, disabled: bool):
        self.state.gradual_sale_disabled = disabled

    # ═══════════════════════════════════════════════════════════════════════
    # ROLLBACK
    # ═══════════════════════════════════════════════════════════════════════

    def snapshot(self, epoch_id: int) -> EpochAssetPair:
        return self.pair(epoch_id).copy()

    def restore(self, saved: EpochAssetPair):
        self.state.epochs[saved.epoch_id] = saved

