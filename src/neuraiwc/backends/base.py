"""
Base chain backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class Utxo:
    txid: str
    vout: int
    value: int  # satoshis
    address: str
    scriptpubkey: str  # hex
    confirmations: int
    height: int | None = None

    @property
    def outpoint(self) -> tuple[str, int]:
        return (self.txid, self.vout)

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "value": self.value,
            "address": self.address,
            "scriptPubKey": self.scriptpubkey,
            "confirmations": self.confirmations,
            "height": self.height,
        }


class ChainBackend(ABC):
    """
    Chain node access needed by the bridge.

    Implementations raise neuraiwc.errors.RpcError on failure, flagging
    transient failures so callers can retry them.
    """

    @abstractmethod
    async def get_utxos(self, address: str) -> list[Utxo]:
        """Get unspent outputs paying to an address"""

    @abstractmethod
    async def broadcast_raw_transaction(self, tx_hex: str) -> str:
        """Broadcast a raw transaction, returns txid"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current chain height"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
