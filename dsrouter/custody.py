"""
DS Router - Custody

In-memory token custody, the RA -> CT + DS issuer and profit sinks.

Every balance and allowance change made while a journal is open is recorded
as a delta, so a failed trade can be reverted exactly even when other trades
touched the same balances in between.
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, List, Optional, Tuple

from .dex_types import EpochAssets, derive_address, normalize_address
from .errors import TransferFailed

log = logging.getLogger(__name__)

_Entry = Tuple[Dict, Tuple, int]

_journal: ContextVar[Optional[List[_Entry]]] = ContextVar("custody_journal", default=None)


class InMemoryCustody:
    """
    Balances and allowances keyed by (asset, holder).

    Usage:
        custody = InMemoryCustody()
        custody.mint(ra, alice, 100 * 10**18)
        custody.authorize_allowance(ra, alice, router, 10 * 10**18)
        custody.transfer(ra, alice, router, 10 * 10**18, spender=router)
    """

    def __init__(self):
        self.balances: Dict[Tuple[str, str], int] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.nonces: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    # ═══════════════════════════════════════════════════════════════════════
    # JOURNAL
    # ═══════════════════════════════════════════════════════════════════════

    @contextmanager
    def journal(self):
        """
        Record every change made in this context and revert them all if the
        block raises. Nested journals join the outermost one.
        """
        if _journal.get() is not None:
            yield
            return

        entries: List[_Entry] = []
        token = _journal.set(entries)
        try:
            yield
        except BaseException:
            self._revert(entries)
            raise
        finally:
            _journal.reset(token)

    def _revert(self, entries: List[_Entry]):
        with self._lock:
            for table, key, delta in reversed(entries):
                table[key] = table.get(key, 0) - delta
        log.warning(f"Custody: reverted {len(entries)} changes")

    def _apply(self, table: Dict, key: Tuple, delta: int):
        # caller holds self._lock
        table[key] = table.get(key, 0) + delta
        entries = _journal.get()
        if entries is not None:
            entries.append((table, key, delta))

    # ═══════════════════════════════════════════════════════════════════════
    # TOKEN OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════

    def balance_of(self, asset: str, holder: str) -> int:
        return self.balances.get((normalize_address(asset), normalize_address(holder)), 0)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        key = (normalize_address(asset), normalize_address(owner), normalize_address(spender))
        return self.allowances.get(key, 0)

    def authorize_allowance(self, asset: str, owner: str, spender: str, amount: int):
        """Set spender's allowance over owner's asset."""
        if amount < 0:
            raise ValueError(f"Allowance must be >= 0, got {amount}")
        key = (normalize_address(asset), normalize_address(owner), normalize_address(spender))
        with self._lock:
            self._apply(self.allowances, key, amount - self.allowances.get(key, 0))

    def transfer(self, asset: str, sender: str, recipient: str, amount: int,
                 spender: Optional[str] = None):
        """
        Move amount of asset from sender to recipient.

        Args:
            asset: Token address
            sender: Holder debited
            recipient: Holder credited
            amount: Base units, >= 0
            spender: Third party acting on sender's allowance, if any

        Raises:
            TransferFailed: Balance or allowance too low
        """
        if amount < 0:
            raise TransferFailed(f"Negative transfer amount {amount}")
        if amount == 0:
            return

        asset = normalize_address(asset)
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        with self._lock:
            if spender is not None and normalize_address(spender) != sender:
                allowance_key = (asset, sender, normalize_address(spender))
                allowed = self.allowances.get(allowance_key, 0)
                if allowed < amount:
                    raise TransferFailed(
                        f"Allowance {allowed} < {amount} for {spender} on {sender}'s {asset}"
                    )
                self._apply(self.allowances, allowance_key, -amount)

            balance = self.balances.get((asset, sender), 0)
            if balance < amount:
                raise TransferFailed(f"Balance {balance} < {amount} for {sender} on {asset}")
            self._apply(self.balances, (asset, sender), -amount)
            self._apply(self.balances, (asset, recipient), amount)

    def nonce_of(self, asset: str, owner: str) -> int:
        return self.nonces.get((normalize_address(asset), normalize_address(owner)), 0)

    def use_nonce(self, asset: str, owner: str, nonce: int):
        """Consume owner's permit nonce on asset; it must equal the current one."""
        key = (normalize_address(asset), normalize_address(owner))
        with self._lock:
            current = self.nonces.get(key, 0)
            if nonce != current:
                raise TransferFailed(f"Nonce {nonce} != expected {current} for {owner}")
            self._apply(self.nonces, key, 1)

    def mint(self, asset: str, recipient: str, amount: int):
        if amount < 0:
            raise TransferFailed(f"Negative mint amount {amount}")
        with self._lock:
            self._apply(self.balances, (normalize_address(asset), normalize_address(recipient)), amount)

    def burn(self, asset: str, holder: str, amount: int):
        key = (normalize_address(asset), normalize_address(holder))
        with self._lock:
            balance = self.balances.get(key, 0)
            if amount < 0 or balance < amount:
                raise TransferFailed(f"Cannot burn {amount} of {asset}, balance {balance}")
            self._apply(self.balances, key, -amount)


class InMemoryIssuer:
    """
    Issues CT + DS 1:1 against RA and redeems them back.

    RA backing is held at the issuer's own address.
    """

    def __init__(self, custody: InMemoryCustody, address: Optional[str] = None):
        self.custody = custody
        self.address = normalize_address(address or derive_address("dsrouter.issuer"))

    def deposit(self, assets: EpochAssets, depositor: str, amount: int) -> int:
        """Lock amount RA, mint amount CT and amount DS to the depositor."""
        if amount <= 0:
            raise ValueError(f"Deposit must be positive, got {amount}")
        self.custody.transfer(assets.ra, depositor, self.address, amount)
        self.custody.mint(assets.ct, depositor, amount)
        self.custody.mint(assets.ds, depositor, amount)
        return amount

    def redeem(self, assets: EpochAssets, redeemer: str, amount: int) -> int:
        """Burn amount CT and amount DS, release amount RA."""
        if amount <= 0:
            raise ValueError(f"Redeem must be positive, got {amount}")
        self.custody.burn(assets.ds, redeemer, amount)
        self.custody.burn(assets.ct, redeemer, amount)
        self.custody.transfer(assets.ra, self.address, redeemer, amount)
        return amount


class ProfitSink:
    """Pool owner notified of RA profit. The RA itself is sent by custody."""

    address: str

    def accept_profit(self, epoch_id: int, amount: int):
        raise NotImplementedError


class RecordingProfitSink(ProfitSink):
    """Profit sink that keeps every notification."""

    def __init__(self, label: str):
        self.label = label
        self.address = derive_address(f"dsrouter.sink.{label}")
        self.received: List[Tuple[int, int]] = []

    def accept_profit(self, epoch_id: int, amount: int):
        self.received.append((epoch_id, amount))
        log.info(f"Profit sink {self.label}: {amount} RA for epoch {epoch_id}")

    def total(self, epoch_id: Optional[int] = None) -> int:
        return sum(amount for epoch, amount in self.received
                   if epoch_id is None or epoch == epoch_id)
