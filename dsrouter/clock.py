"""
DS Router - Clock

Current block number and timestamp, read either from a node or from a
manually advanced clock.
"""

import logging
import threading
from typing import Tuple

from .config import RouterConfig
from .rpc_client import RPCClient

log = logging.getLogger(__name__)


class Clock:
    """Source of (block, timestamp)."""

    def block_number(self) -> int:
        raise NotImplementedError

    def timestamp(self) -> int:
        raise NotImplementedError

    def now(self) -> Tuple[int, int]:
        return self.block_number(), self.timestamp()


class ManualClock(Clock):
    """
    Clock moved by hand, for tests and simulations.

    Usage:
        clock = ManualClock(block=100, timestamp=1_700_000_000)
        clock.advance(blocks=10, seconds=120)
    """

    def __init__(self, block: int = 0, timestamp: int = 0):
        self._block = block
        self._timestamp = timestamp
        self._lock = threading.Lock()

    def block_number(self) -> int:
        return self._block

    def timestamp(self) -> int:
        return self._timestamp

    def advance(self, blocks: int = 0, seconds: int = 0):
        if blocks < 0 or seconds < 0:
            raise ValueError("Clock cannot go backwards")
        with self._lock:
            self._block += blocks
            self._timestamp += seconds

    def set(self, block: int, timestamp: int):
        with self._lock:
            self._block = block
            self._timestamp = timestamp


class RPCClock(Clock):
    """Clock backed by the latest block of an EVM node."""

    def __init__(self, rpc: RPCClient):
        self.rpc = rpc

    def block_number(self) -> int:
        return self.rpc.block_number()

    def timestamp(self) -> int:
        return self.rpc.block_timestamp("latest")

    def now(self) -> Tuple[int, int]:
        block = self.rpc.get_block("latest")
        number, timestamp = int(block["number"], 16), int(block["timestamp"], 16)
        log.debug(f"Chain head: block={number} ts={timestamp}")
        return number, timestamp


def clock_from_config(config: RouterConfig) -> RPCClock:
    """Node-backed clock for the configured rpc_url."""
    if not config.rpc_url:
        raise ValueError("rpc_url is not configured")
    return RPCClock(RPCClient(config.rpc_url))
