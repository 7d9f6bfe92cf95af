"""
DS Router

Flash-swap router for depeg swap (DS) tokens.

Architecture:
  - Reserves (vault + stability pool) are kept per epoch in a ReserveLedger
  - Buys fill rollover sale -> reserve sale -> curve, in that order
  - Curve trades settle in one borrow -> callback -> repay round trip
  - Every trade is atomic; failures revert ledger, HIYA and token movements

Usage:
    from dsrouter import FlashSwapRouter, InMemoryCustody, YieldSpaceVenue

    custody = InMemoryCustody()
    venue = YieldSpaceVenue(custody, clock)
    router = FlashSwapRouter(custody, issuer, venue, clock, vault, stability)
    receipt = router.buy("reserve-1", 1, 10 * 10**18, min_out=0, caller=alice)
"""

from .dex_types import (
    EpochAssets, EpochAssetPair, ReserveState, ReservePool, TradeSide,
    SettlementPhase, CallbackContext, SettlementOutcome, TradeReceipt,
)
from .errors import (
    RouterError, NumericalError, LiquidityError, PolicyError, SlippageError, CustodyError,
    NoBracket, NoConvergence, InvalidDomain, DivisionByZero, InvalidDecay,
    InsufficientLiquidity, InvalidSignature, PermitNotSupported, CallbackOriginMismatch,
    InsufficientOutput, TransferFailed,
)
from .bonding_curve import CurveParams, solve, compute_one_minus_t, required_amount_in
from .reserve_ledger import ReserveLedger, ReserveDrain, split_drain
from .rollover import RolloverSaleEngine, RolloverFill
from .hiya import HiyaAccumulator, decay_factor, realized_rate
from .custody import InMemoryCustody, InMemoryIssuer, ProfitSink, RecordingProfitSink
from .venue import LiquidityVenue, YieldSpaceVenue
from .settlement import FlashSettlement, CallbackRegistry
from .permit import Permit, PermitVerifier, sign_permit
from .clock import Clock, ManualClock, RPCClock, clock_from_config
from .rpc_client import RPCClient, RPCError
from .config import RouterConfig, load_config, configure_logging
from .router import FlashSwapRouter

__version__ = "0.1.0"
__all__ = [
    # Types
    "EpochAssets", "EpochAssetPair", "ReserveState", "ReservePool", "TradeSide",
    "SettlementPhase", "CallbackContext", "SettlementOutcome", "TradeReceipt",
    # Errors
    "RouterError", "NumericalError", "LiquidityError", "PolicyError", "SlippageError",
    "CustodyError", "NoBracket", "NoConvergence", "InvalidDomain", "DivisionByZero",
    "InvalidDecay", "InsufficientLiquidity", "InvalidSignature", "PermitNotSupported",
    "CallbackOriginMismatch", "InsufficientOutput", "TransferFailed",
    # Core
    "CurveParams", "solve", "compute_one_minus_t", "required_amount_in",
    "ReserveLedger", "ReserveDrain", "split_drain",
    "RolloverSaleEngine", "RolloverFill",
    "HiyaAccumulator", "decay_factor", "realized_rate",
    "FlashSettlement", "CallbackRegistry", "FlashSwapRouter",
    # Collaborators
    "InMemoryCustody", "InMemoryIssuer", "ProfitSink", "RecordingProfitSink",
    "LiquidityVenue", "YieldSpaceVenue",
    "Permit", "PermitVerifier", "sign_permit",
    "Clock", "ManualClock", "RPCClock", "clock_from_config", "RPCClient", "RPCError",
    # Config
    "RouterConfig", "load_config", "configure_logging",
]
