"""
DS Router - RPC Client

JSON-RPC client for an EVM node, used to read block height and time.
"""

import requests
from typing import Any, Optional


class RPCError(Exception):
    """RPC call failed."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class RPCClient:
    """
    JSON-RPC client for an Ethereum-compatible node.

    Usage:
        rpc = RPCClient("http://localhost:8545")
        height = rpc.eth_blockNumber()
        block = rpc.get_block("latest")
    """

    def __init__(self, url: str = "http://localhost:8545",
                 user: Optional[str] = None, password: Optional[str] = None,
                 timeout: int = 30):
        self.url = url
        self.auth = (user, password) if user else None
        self.timeout = timeout
        self._id = 0

    def _call(self, method: str, params: list = None) -> Any:
        """Make RPC call."""
        self._id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._id,
            "method": method,
            "params": params or []
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                auth=self.auth,
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise RPCError(-1, f"Connection failed: {e}")

        result = response.json()

        if "error" in result and result["error"]:
            raise RPCError(result["error"]["code"], result["error"]["message"])

        return result.get("result")

    def __getattr__(self, name: str):
        """Allow calling RPC methods as attributes."""
        if name.startswith("_"):
            raise AttributeError(name)

        def method(*args):
            return self._call(name, list(args))
        return method

    # ═══════════════════════════════════════════════════════════════════════
    # COMMON RPC METHODS
    # ═══════════════════════════════════════════════════════════════════════

    def block_number(self) -> int:
        """Get current block height."""
        return _hex_to_int(self._call("eth_blockNumber"))

    def get_block(self, block: Any = "latest") -> dict:
        """
        Get a block header without transactions.

        Args:
            block: Block number or tag ("latest", "pending")
        """
        tag = hex(block) if isinstance(block, int) else block
        result = self._call("eth_getBlockByNumber", [tag, False])
        if result is None:
            raise RPCError(-32000, f"Block {block} not found")
        return result

    def block_timestamp(self, block: Any = "latest") -> int:
        return _hex_to_int(self.get_block(block)["timestamp"])

    def chain_id(self) -> int:
        return _hex_to_int(self._call("eth_chainId"))
