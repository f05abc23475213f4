"""
neuraid JSON-RPC chain backend.

Requires a node running with -addressindex so getaddressutxos is available.
"""

from __future__ import annotations

import os
from typing import Any

import httpx
from loguru import logger

from neuraiwc.backends.base import ChainBackend, Utxo
from neuraiwc.errors import RpcError

DEFAULT_RPC_TIMEOUT = 30.0

# Node-side conditions that clear up on their own
TRANSIENT_RPC_CODES = {
    -28,  # RPC_IN_WARMUP
    -9,  # RPC_CLIENT_NOT_CONNECTED
    -10,  # RPC_CLIENT_IN_INITIAL_DOWNLOAD
}

# Environment variable to enable sensitive logging (addresses, raw transactions)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class NeuraiRpcBackend(ChainBackend):
    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:19001",
        rpc_user: str = "",
        rpc_password: str = "",
        timeout: float = DEFAULT_RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        auth = (rpc_user, rpc_password) if rpc_user else None
        self.client = httpx.AsyncClient(timeout=timeout, auth=auth, transport=transport)
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call to neuraid.

        Raises:
            RpcError: transient for connection problems, timeouts and node
                warm-up; non-transient for every other RPC error.
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise RpcError(f"RPC {method} timed out", transient=True) from e
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise RpcError(f"RPC {method} failed: {e}", transient=True) from e

        # neuraid reports RPC errors with HTTP 500 and a JSON body
        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            transient = response.status_code >= 500
            raise RpcError(
                f"RPC {method} returned HTTP {response.status_code}", transient=transient
            )

        error = data.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", str(error))
            raise RpcError(
                f"RPC error {code}: {message}",
                rpc_code=code,
                transient=code in TRANSIENT_RPC_CODES,
            )

        return data.get("result")

    async def get_block_height(self) -> int:
        height = await self._rpc_call("getblockcount")
        logger.debug(f"Current block height: {height}")
        return int(height)

    async def get_utxos(self, address: str) -> list[Utxo]:
        tip_height = await self.get_block_height()
        result = await self._rpc_call("getaddressutxos", [{"addresses": [address]}])

        utxos = []
        for entry in result or []:
            # Asset outputs share the address index; only native coin spends here
            if entry.get("assetName", "XNA") not in ("XNA", ""):
                continue
            height = entry.get("height")
            confirmations = tip_height - height + 1 if height and height > 0 else 0
            utxos.append(
                Utxo(
                    txid=entry["txid"],
                    vout=int(entry["outputIndex"]),
                    value=int(entry["satoshis"]),
                    address=entry.get("address", address),
                    scriptpubkey=entry["script"],
                    confirmations=confirmations,
                    height=height,
                )
            )

        if SENSITIVE_LOGGING:
            logger.debug(f"Fetched {len(utxos)} UTXOs for {address}")
        else:
            logger.debug(f"Fetched {len(utxos)} UTXOs")
        return utxos

    async def broadcast_raw_transaction(self, tx_hex: str) -> str:
        if SENSITIVE_LOGGING:
            logger.debug(f"Broadcasting raw transaction: {tx_hex}")
        txid = await self._rpc_call("sendrawtransaction", [tx_hex])
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def close(self) -> None:
        await self.client.aclose()
