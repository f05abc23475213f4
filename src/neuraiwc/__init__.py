"""
neuraiwc - WalletConnect v2 bridge for the Neurai chain

Validates session proposals, dispatches dApp JSON-RPC requests and runs the
PSBT sign/finalize pipeline against a UTXO ledger, without holding keys.
"""

__version__ = "0.1.0"

from neuraiwc.chain_identity import (
    AccountId,
    ChainId,
    ChainIdentity,
    chain_id_from_genesis,
    format_chain_id,
    parse_account_id,
    parse_chain_id,
)
from neuraiwc.config import BridgeSettings, CoinSelectionPolicy
from neuraiwc.constants import NetworkType, RpcMethod
from neuraiwc.dispatcher import RequestDispatcher
from neuraiwc.errors import BridgeError
from neuraiwc.ledger import UtxoLedgerView
from neuraiwc.negotiator import Accepted, Rejected, SessionNegotiator
from neuraiwc.psbt_pipeline import PsbtPipeline, PsbtSession, PsbtStatus
from neuraiwc.supervisor import BridgeSupervisor, create_bridge
from neuraiwc.transport import Transport

__all__ = [
    "Accepted",
    "AccountId",
    "BridgeError",
    "BridgeSettings",
    "BridgeSupervisor",
    "ChainId",
    "ChainIdentity",
    "CoinSelectionPolicy",
    "NetworkType",
    "PsbtPipeline",
    "PsbtSession",
    "PsbtStatus",
    "Rejected",
    "RequestDispatcher",
    "RpcMethod",
    "SessionNegotiator",
    "Transport",
    "UtxoLedgerView",
    "chain_id_from_genesis",
    "create_bridge",
    "format_chain_id",
    "parse_account_id",
    "parse_chain_id",
]
