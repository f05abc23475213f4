"""
Neurai chain parameters and WalletConnect namespace constants.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# CAIP-2 namespace for UTXO chains identified by genesis block hash
BIP122_NAMESPACE = "bip122"

# CAIP-2 references are the first 32 hex chars of the genesis block hash
CHAIN_REFERENCE_LENGTH = 32

# Neurai mainnet genesis hash prefix
NEURAI_MAINNET_REFERENCE = "00000044d33c0c0ba019be5c02497304"

SATS_PER_COIN = 100_000_000

# Events every accepted session must carry
EVENT_ACCOUNTS_CHANGED = "accountsChanged"
EVENT_CHAIN_CHANGED = "chainChanged"
REQUIRED_EVENTS: tuple[str, ...] = (EVENT_ACCOUNTS_CHANGED, EVENT_CHAIN_CHANGED)


class RpcMethod(str, Enum):
    """JSON-RPC methods the wallet implements."""

    GET_ADDRESSES = "neurai_getAddresses"
    GET_UTXOS = "neurai_getUtxos"
    SIGN_MESSAGE = "neurai_signMessage"
    SIGN_PSBT = "neurai_signPsbt"
    FINALIZE_PSBT = "neurai_finalizePsbt"
    BROADCAST_TRANSACTION = "neurai_broadcastTransaction"


SUPPORTED_EVENTS: tuple[str, ...] = REQUIRED_EVENTS


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"


@dataclass(frozen=True)
class NetworkParams:
    """Address and derivation parameters of one Neurai network."""

    network: NetworkType
    pubkey_address_version: int
    script_address_version: int
    bip44_coin_type: int
    message_magic: str
    default_rpc_url: str
    chain_reference: str | None = None

    def account_path(self, index: int, account: int = 0, change: int = 0) -> str:
        return f"m/44'/{self.bip44_coin_type}'/{account}'/{change}/{index}"


NETWORK_PARAMS: dict[NetworkType, NetworkParams] = {
    NetworkType.MAINNET: NetworkParams(
        network=NetworkType.MAINNET,
        pubkey_address_version=53,
        script_address_version=117,
        bip44_coin_type=1900,
        message_magic="Neurai Signed Message:\n",
        default_rpc_url="http://127.0.0.1:19001",
        chain_reference=NEURAI_MAINNET_REFERENCE,
    ),
    # Testnet and regtest references depend on the deployed genesis block
    NetworkType.TESTNET: NetworkParams(
        network=NetworkType.TESTNET,
        pubkey_address_version=127,
        script_address_version=196,
        bip44_coin_type=1,
        message_magic="Neurai Signed Message:\n",
        default_rpc_url="http://127.0.0.1:19101",
    ),
    NetworkType.REGTEST: NetworkParams(
        network=NetworkType.REGTEST,
        pubkey_address_version=127,
        script_address_version=196,
        bip44_coin_type=1,
        message_magic="Neurai Signed Message:\n",
        default_rpc_url="http://127.0.0.1:19443",
    ),
}


def get_network_params(network: NetworkType | str) -> NetworkParams:
    return NETWORK_PARAMS[NetworkType(network)]
