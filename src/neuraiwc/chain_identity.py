"""
CAIP-2 chain identifiers and CAIP-10 account identifiers for bip122 chains.

    ChainId:   bip122:<first 32 hex chars of the genesis block hash>
    AccountId: bip122:<reference>:<address>

Parsing is total: malformed input raises InvalidChainId / InvalidAccountId
and nothing else.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from neuraiwc.constants import BIP122_NAMESPACE, CHAIN_REFERENCE_LENGTH, NetworkParams
from neuraiwc.errors import InvalidAccountId, InvalidChainId
from neuraiwc.wallet.address import AddressError, decode_address

_REFERENCE_RE = re.compile(rf"^[0-9a-f]{{{CHAIN_REFERENCE_LENGTH}}}$")
# CAIP-10 account_address charset
_ADDRESS_RE = re.compile(r"^[-.%a-zA-Z0-9]{1,128}$")
# Generic CAIP-2 shape, any namespace
_CAIP2_RE = re.compile(r"^[-a-z0-9]{3,8}:[-_a-zA-Z0-9]{1,32}$")


@dataclass(frozen=True)
class ChainId:
    namespace: str
    reference: str

    def __str__(self) -> str:
        return format_chain_id(self)


@dataclass(frozen=True)
class AccountId:
    chain_id: ChainId
    address: str

    def __str__(self) -> str:
        return f"{format_chain_id(self.chain_id)}:{self.address}"


def parse_chain_id(value: str) -> ChainId:
    if not isinstance(value, str):
        raise InvalidChainId(f"Chain id must be a string, got {type(value).__name__}")

    parts = value.split(":")
    if len(parts) != 2:
        raise InvalidChainId(f"Chain id must be '<namespace>:<reference>': {value!r}")

    namespace, reference = parts
    if namespace != BIP122_NAMESPACE:
        raise InvalidChainId(f"Unsupported chain namespace '{namespace}' in {value!r}")
    if not _REFERENCE_RE.match(reference):
        raise InvalidChainId(
            f"Chain reference must be {CHAIN_REFERENCE_LENGTH} lowercase hex chars: {value!r}"
        )
    return ChainId(namespace, reference)


def is_caip2(value: str) -> bool:
    """True for any well-formed CAIP-2 chain id, whatever its namespace."""
    return isinstance(value, str) and bool(_CAIP2_RE.match(value))


def format_chain_id(chain_id: ChainId) -> str:
    return f"{chain_id.namespace}:{chain_id.reference}"


def parse_account_id(value: str) -> AccountId:
    if not isinstance(value, str):
        raise InvalidAccountId(f"Account id must be a string, got {type(value).__name__}")

    parts = value.split(":")
    if len(parts) != 3:
        raise InvalidAccountId(f"Account id must be '<namespace>:<reference>:<address>': {value!r}")

    try:
        chain_id = parse_chain_id(f"{parts[0]}:{parts[1]}")
    except InvalidChainId as e:
        raise InvalidAccountId(f"Invalid chain in account id {value!r}: {e.message}") from e

    if not _ADDRESS_RE.match(parts[2]):
        raise InvalidAccountId(f"Invalid account address in {value!r}")
    return AccountId(chain_id, parts[2])


def chain_id_from_genesis(genesis_hash: str) -> ChainId:
    """Derive the CAIP-2 chain id from a full (or prefix of a) genesis block hash."""
    reference = genesis_hash.strip().lower()[:CHAIN_REFERENCE_LENGTH]
    return parse_chain_id(f"{BIP122_NAMESPACE}:{reference}")


class ChainIdentity:
    """
    The chain this bridge serves, with its address encoding rule.

    is_supported only looks at namespace and reference; address validity is
    checked separately against the configured address version.
    """

    def __init__(self, chain_id: ChainId, params: NetworkParams):
        self.chain_id = chain_id
        self.params = params

    def is_supported(self, chain_id: ChainId) -> bool:
        return (
            chain_id.namespace == self.chain_id.namespace
            and chain_id.reference == self.chain_id.reference
        )

    def validate_address(self, address: str) -> bool:
        try:
            version, _ = decode_address(address)
        except AddressError:
            return False
        return version in (self.params.pubkey_address_version, self.params.script_address_version)

    def account_id(self, address: str) -> AccountId:
        if not self.validate_address(address):
            raise InvalidAccountId(f"Invalid {self.params.network.value} address: {address}")
        return AccountId(self.chain_id, address)

    def parse_account(self, value: str) -> AccountId:
        """Parse a CAIP-10 string, or a bare address, into an account on this chain."""
        if ":" not in value:
            return self.account_id(value)

        account = parse_account_id(value)
        if not self.is_supported(account.chain_id):
            raise InvalidAccountId(f"Account {value} is not on chain {self.chain_id}")
        if not self.validate_address(account.address):
            raise InvalidAccountId(f"Invalid {self.params.network.value} address in {value}")
        return account
