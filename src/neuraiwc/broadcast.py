"""
Transaction broadcast with retry of transient node failures.
"""

from __future__ import annotations

import re

from loguru import logger

from neuraiwc.backends.base import ChainBackend
from neuraiwc.errors import InvalidParams, RpcError
from neuraiwc.retry import retry_transient
from neuraiwc.wallet.transaction import (
    TransactionError,
    deserialize_transaction,
    transaction_id,
)

_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")
_TXID_RE = re.compile(r"^[0-9a-f]{64}$")

# Node answers for a transaction it already holds
RPC_VERIFY_ALREADY_IN_CHAIN = -27
_ALREADY_KNOWN_REASONS = ("txn-already-in-mempool", "txn-already-known", "already in block chain")


class BroadcastService:
    """
    Sends finalized transactions to the node.

    Rejections by network rules (double spend, missing inputs, policy) are
    final and raised on the first attempt; only transient failures retry.
    """

    def __init__(
        self,
        backend: ChainBackend,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        timeout: float = 30.0,
    ):
        self.backend = backend
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout

    async def broadcast(self, tx_hex: str) -> str:
        tx_hex = tx_hex.strip()
        if not _HEX_RE.match(tx_hex):
            raise InvalidParams("Transaction must be a non-empty hex string")
        try:
            tx = deserialize_transaction(bytes.fromhex(tx_hex))
        except TransactionError as e:
            raise InvalidParams(f"Not a valid transaction: {e}") from e

        local_txid = transaction_id(tx)
        attempts = 0

        async def send() -> str:
            nonlocal attempts
            attempts += 1
            try:
                return await self.backend.broadcast_raw_transaction(tx_hex)
            except RpcError as e:
                # An earlier attempt that timed out may still have reached the node
                if attempts > 1 and _is_already_known(e):
                    logger.info(f"Node already has {local_txid} after retry: {e.message}")
                    return local_txid
                raise

        txid = await retry_transient(
            send,
            description="Broadcast",
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            timeout=self.timeout,
        )

        if not isinstance(txid, str) or not _TXID_RE.match(txid.lower()):
            raise RpcError(f"Node returned an invalid txid: {txid!r}")
        txid = txid.lower()
        logger.info(f"Transaction broadcast: {txid}")
        return txid


def _is_already_known(error: RpcError) -> bool:
    if error.rpc_code == RPC_VERIFY_ALREADY_IN_CHAIN:
        return True
    message = error.message.lower()
    return any(reason in message for reason in _ALREADY_KNOWN_REASONS)
