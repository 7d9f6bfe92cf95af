"""
DS Router - Data Types

Per-epoch reserve state, per-reserve policy state, the ephemeral settlement
callback context and trade receipts.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional

from web3 import Web3


def normalize_address(address: str) -> str:
    """Checksum an address (0x-prefixed hex)."""
    return Web3.to_checksum_address(address)


def derive_address(label: str) -> str:
    """Deterministic address from a label (last 20 bytes of keccak)."""
    return Web3.to_checksum_address(Web3.keccak(text=label)[-20:])


class TradeSide(Enum):
    """BUY = RA in, DS out. SELL = DS in, RA out."""
    BUY = "buy"
    SELL = "sell"


class ReservePool(Enum):
    """The two internal DS reserve sources of an epoch."""
    VAULT = "vault"
    STABILITY = "stability"


class SettlementPhase(Enum):
    """Settlement state machine"""
    QUOTED = "quoted"
    BORROWING = "borrowing"
    SETTLING = "settling"
    SETTLED = "settled"
    UNWOUND = "unwound"


@dataclass(frozen=True)
class EpochAssets:
    """Asset identifiers of one issuance epoch."""
    ds: str
    ct: str
    ra: str

    def __post_init__(self):
        object.__setattr__(self, "ds", normalize_address(self.ds))
        object.__setattr__(self, "ct", normalize_address(self.ct))
        object.__setattr__(self, "ra", normalize_address(self.ra))

    def to_dict(self) -> dict:
        return {"ds": self.ds, "ct": self.ct, "ra": self.ra}

    @classmethod
    def from_dict(cls, data: dict) -> "EpochAssets":
        return cls(ds=data["ds"], ct=data["ct"], ra=data["ra"])


@dataclass
class EpochAssetPair:
    """
    Reserve bookkeeping for one (reserve, epoch).

    Structure:
      - assets: DS / CT / RA identifiers
      - vault_reserve, stability_reserve: DS held for each pool (base units)
      - vault_drained, stability_drained: DS sold out of each pool so far
      - cumulative_rate_volume, cumulative_volume: HIYA numerator/denominator
      - issued_at, expiry: epoch timestamps
      - issued_block: block number of issuance
    """
    epoch_id: int
    assets: EpochAssets
    issued_at: int
    expiry: int
    issued_block: int = 0

    vault_reserve: int = 0
    stability_reserve: int = 0
    vault_drained: int = 0
    stability_drained: int = 0

    cumulative_rate_volume: int = 0
    cumulative_volume: int = 0

    @property
    def total_reserve(self) -> int:
        return self.vault_reserve + self.stability_reserve

    def balance_of(self, pool: ReservePool) -> int:
        if pool == ReservePool.VAULT:
            return self.vault_reserve
        return self.stability_reserve

    def copy(self) -> "EpochAssetPair":
        return replace(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "epoch_id": self.epoch_id,
            "assets": self.assets.to_dict(),
            "issued_at": self.issued_at,
            "expiry": self.expiry,
            "issued_block": self.issued_block,
            "vault_reserve": self.vault_reserve,
            "stability_reserve": self.stability_reserve,
            "vault_drained": self.vault_drained,
            "stability_drained": self.stability_drained,
            "cumulative_rate_volume": self.cumulative_rate_volume,
            "cumulative_volume": self.cumulative_volume,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EpochAssetPair":
        """Create EpochAssetPair from dictionary."""
        return cls(
            epoch_id=int(data["epoch_id"]),
            assets=EpochAssets.from_dict(data["assets"]),
            issued_at=int(data["issued_at"]),
            expiry=int(data["expiry"]),
            issued_block=int(data.get("issued_block", 0)),
            vault_reserve=int(data.get("vault_reserve", 0)),
            stability_reserve=int(data.get("stability_reserve", 0)),
            vault_drained=int(data.get("vault_drained", 0)),
            stability_drained=int(data.get("stability_drained", 0)),
            cumulative_rate_volume=int(data.get("cumulative_rate_volume", 0)),
            cumulative_volume=int(data.get("cumulative_volume", 0)),
        )


@dataclass
class ReserveState:
    """
    Policy and epoch map of one reserve.

    Percentages are 18-decimal fixed point (100e18 == 100%).
    hiya is an 18-decimal rate, 0 until an epoch with volume has rolled over.
    """
    reserve_id: str
    epochs: Dict[int, EpochAssetPair] = field(default_factory=dict)
    decay_discount_rate_in_days: int = 0
    rollover_end_block: int = 0
    sell_pressure_cap_percent: int = 0
    gradual_sale_disabled: bool = False
    hiya: int = 0
    first_epoch: Optional[int] = None
    current_epoch: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "reserve_id": self.reserve_id,
            "epochs": {str(k): v.to_dict() for k, v in self.epochs.items()},
            "decay_discount_rate_in_days": self.decay_discount_rate_in_days,
            "rollover_end_block": self.rollover_end_block,
            "sell_pressure_cap_percent": self.sell_pressure_cap_percent,
            "gradual_sale_disabled": self.gradual_sale_disabled,
            "hiya": self.hiya,
            "first_epoch": self.first_epoch,
            "current_epoch": self.current_epoch,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReserveState":
        return cls(
            reserve_id=data["reserve_id"],
            epochs={int(k): EpochAssetPair.from_dict(v)
                    for k, v in data.get("epochs", {}).items()},
            decay_discount_rate_in_days=int(data.get("decay_discount_rate_in_days", 0)),
            rollover_end_block=int(data.get("rollover_end_block", 0)),
            sell_pressure_cap_percent=int(data.get("sell_pressure_cap_percent", 0)),
            gradual_sale_disabled=bool(data.get("gradual_sale_disabled", False)),
            hiya=int(data.get("hiya", 0)),
            first_epoch=data.get("first_epoch"),
            current_epoch=data.get("current_epoch"),
        )


@dataclass
class CallbackContext:
    """
    Context of one in-flight settlement.

    Exists only between the borrow request and the venue callback; owned by
    the trade that created it.
    """
    trade_id: str
    side: TradeSide
    caller: str
    reserve_id: str
    epoch_id: int
    assets: EpochAssets
    borrowed_amount: int
    provided_amount: int
    venue: str
    phase: SettlementPhase = SettlementPhase.QUOTED


@dataclass
class SettlementOutcome:
    """What the callback realized, handed back through borrow_and_settle."""
    repayment: int
    refund: int
    realized_amount: int


@dataclass
class TradeReceipt:
    """
    Result of one settled trade, broken down per stage.

    For a buy, amount_in is RA and amount_out is DS; refunded_excess is CT.
    For a sell, amount_in is DS and amount_out is RA.
    """
    trade_id: str
    side: TradeSide
    reserve_id: str
    epoch_id: int
    amount_in: int
    amount_out: int
    rollover_out: int = 0
    reserve_out: int = 0
    curve_out: int = 0
    refunded_excess: int = 0
    borrowed: int = 0
    repayment: int = 0
    vault_profit: int = 0
    stability_profit: int = 0

    def to_dict(self) -> dict:
        return {
            "trade_id": self.trade_id,
            "side": self.side.value,
            "reserve_id": self.reserve_id,
            "epoch_id": self.epoch_id,
            "amount_in": self.amount_in,
            "amount_out": self.amount_out,
            "rollover_out": self.rollover_out,
            "reserve_out": self.reserve_out,
            "curve_out": self.curve_out,
            "refunded_excess": self.refunded_excess,
            "borrowed": self.borrowed,
            "repayment": self.repayment,
            "vault_profit": self.vault_profit,
            "stability_profit": self.stability_profit,
        }
