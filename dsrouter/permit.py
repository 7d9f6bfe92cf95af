"""
DS Router - Permit Authorization

EIP-2612 style permits: an owner signs typed data granting the router an
allowance, and the router redeems the signature before pulling funds.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from eth_account import Account
from eth_account.messages import encode_typed_data

from .clock import Clock
from .custody import InMemoryCustody
from .dex_types import normalize_address
from .errors import InvalidSignature, PermitNotSupported, TransferFailed

log = logging.getLogger(__name__)

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

PERMIT_TYPE = [
    {"name": "owner", "type": "address"},
    {"name": "spender", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]


@dataclass
class PermitDomain:
    name: str
    version: str = "1"


@dataclass
class Permit:
    """
    Signed allowance grant.

    Fields:
      - owner: Address granting the allowance
      - value: Allowance amount (base units)
      - deadline: Unix timestamp after which the permit is void
      - signature: 65-byte r || s || v signature (bytes or hex)
      - nonce: Owner's nonce on the asset when signed
    """
    owner: str
    value: int
    deadline: int
    signature: Union[bytes, str]
    nonce: int = 0


class PermitVerifier:
    """
    Verifies permits for registered assets and applies them through custody.

    Usage:
        verifier = PermitVerifier(custody, clock, chain_id=1)
        verifier.register_asset(ra, "Redemption Asset")
        verifier.apply(ra, permit, spender=router.address)
    """

    def __init__(self, custody: InMemoryCustody, clock: Clock, chain_id: int = 1):
        self.custody = custody
        self.clock = clock
        self.chain_id = chain_id
        self.domains: Dict[str, PermitDomain] = {}

    def register_asset(self, asset: str, name: str, version: str = "1"):
        self.domains[normalize_address(asset)] = PermitDomain(name, version)

    def supports(self, asset: str) -> bool:
        return normalize_address(asset) in self.domains

    def typed_data(self, asset: str, owner: str, spender: str, value: int,
                   deadline: int, nonce: Optional[int] = None) -> dict:
        """
        Full EIP-712 message for a permit on asset.

        Args:
            asset: Token the allowance is for
            owner: Signer
            spender: Address allowed to spend
            value: Allowance amount
            deadline: Expiry timestamp
            nonce: Defaults to the owner's current nonce

        Raises:
            PermitNotSupported: asset has no registered domain
        """
        asset = normalize_address(asset)
        domain = self.domains.get(asset)
        if domain is None:
            raise PermitNotSupported(f"Asset {asset} does not support permits")
        if nonce is None:
            nonce = self.custody.nonce_of(asset, owner)

        return {
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                "Permit": PERMIT_TYPE,
            },
            "primaryType": "Permit",
            "domain": {
                "name": domain.name,
                "version": domain.version,
                "chainId": self.chain_id,
                "verifyingContract": asset,
            },
            "message": {
                "owner": normalize_address(owner),
                "spender": normalize_address(spender),
                "value": value,
                "nonce": nonce,
                "deadline": deadline,
            },
        }

    def recover(self, asset: str, permit: Permit, spender: str) -> str:
        """Address that signed the permit."""
        message = self.typed_data(asset, permit.owner, spender, permit.value,
                                  permit.deadline, permit.nonce)
        try:
            signable = encode_typed_data(full_message=message)
            return Account.recover_message(signable, signature=permit.signature)
        except Exception as e:
            raise InvalidSignature(f"Unrecoverable permit signature: {e}") from e

    def apply(self, asset: str, permit: Permit, spender: str):
        """
        Verify a permit and grant the allowance.

        Raises:
            PermitNotSupported: asset has no registered domain
            InvalidSignature: Expired, replayed or not signed by the owner
        """
        if not self.supports(asset):
            raise PermitNotSupported(f"Asset {asset} does not support permits")
        if permit.deadline < self.clock.timestamp():
            raise InvalidSignature(f"Permit expired at {permit.deadline}")

        signer = self.recover(asset, permit, spender)
        if normalize_address(signer) != normalize_address(permit.owner):
            raise InvalidSignature(f"Permit signed by {signer}, not {permit.owner}")

        try:
            self.custody.use_nonce(asset, permit.owner, permit.nonce)
        except TransferFailed as e:
            raise InvalidSignature(f"Permit nonce rejected: {e.message}") from e

        self.custody.authorize_allowance(asset, permit.owner, spender, permit.value)
        log.info(f"Permit: {permit.owner} allowed {spender} {permit.value} of {asset}")


def sign_permit(verifier: PermitVerifier, asset: str, private_key: str, spender: str,
                value: int, deadline: int) -> Permit:
    """Build and sign a permit for the account behind private_key."""
    account = Account.from_key(private_key)
    nonce = verifier.custody.nonce_of(asset, account.address)
    message = verifier.typed_data(asset, account.address, spender, value, deadline, nonce)
    signed = Account.sign_message(encode_typed_data(full_message=message), private_key)
    return Permit(
        owner=account.address,
        value=value,
        deadline=deadline,
        signature=signed.signature,
        nonce=nonce,
    )
