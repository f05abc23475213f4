"""
Chain backend implementations.

Available backends:
- NeuraiRpcBackend: neuraid JSON-RPC with the address index enabled
"""

from neuraiwc.backends.base import ChainBackend, Utxo
from neuraiwc.backends.neurai_rpc import NeuraiRpcBackend

__all__ = [
    "ChainBackend",
    "NeuraiRpcBackend",
    "Utxo",
]
