"""
JSON-RPC request dispatch for approved sessions.

Every request is answered with exactly one JsonRpcResponse carrying the
request id. Checks run in a fixed order (topic, method, grant, chain,
params) so the error a dApp sees is predictable.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from neuraiwc.accounts import AccountRegistry, DerivedAccount
from neuraiwc.broadcast import BroadcastService
from neuraiwc.chain_identity import AccountId, ChainId, ChainIdentity, parse_chain_id
from neuraiwc.constants import RpcMethod
from neuraiwc.errors import (
    BridgeError,
    InternalError,
    InvalidAccountId,
    InvalidParams,
    SigningDenied,
    TransportTimeout,
    Unauthorized,
    UnsupportedChain,
    UnsupportedMethod,
)
from neuraiwc.ledger import UtxoLedgerView
from neuraiwc.models import JsonRpcResponse, Session
from neuraiwc.psbt_pipeline import PsbtPipeline
from neuraiwc.session_store import SessionStore
from neuraiwc.wallet.custody import Custody, CustodyError
from neuraiwc.wallet.message import MessageSignatureError, message_hash, recover_compact_signature


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class GetAddressesParams(_Params):
    pass


class GetUtxosParams(_Params):
    address: str | None = None
    amount: int | None = Field(default=None, gt=0, description="Target in satoshis")


class SignMessageParams(_Params):
    message: str
    address: str


class SignPsbtParams(_Params):
    psbt_base64: str = Field(..., alias="psbtBase64", min_length=1)
    account: str | None = None


class FinalizePsbtParams(_Params):
    psbt_base64: str = Field(..., alias="psbtBase64", min_length=1)


class BroadcastTransactionParams(_Params):
    tx_hex: str = Field(..., alias="hex", min_length=2)


PARAMS_MODELS: dict[RpcMethod, type[_Params]] = {
    RpcMethod.GET_ADDRESSES: GetAddressesParams,
    RpcMethod.GET_UTXOS: GetUtxosParams,
    RpcMethod.SIGN_MESSAGE: SignMessageParams,
    RpcMethod.SIGN_PSBT: SignPsbtParams,
    RpcMethod.FINALIZE_PSBT: FinalizePsbtParams,
    RpcMethod.BROADCAST_TRANSACTION: BroadcastTransactionParams,
}


@dataclass(frozen=True)
class RequestContext:
    session: Session
    chain_id: ChainId
    # Session accounts that are also current wallet accounts
    accounts: list[AccountId]


Handler = Callable[[RequestContext, Any], Awaitable[Any]]


class RequestDispatcher:
    def __init__(
        self,
        identity: ChainIdentity,
        sessions: SessionStore,
        accounts: AccountRegistry,
        ledger: UtxoLedgerView,
        pipeline: PsbtPipeline,
        broadcaster: BroadcastService,
        custody: Custody,
        *,
        request_timeout: float = 120.0,
        custody_timeout: float = 30.0,
    ):
        self.identity = identity
        self.sessions = sessions
        self.accounts = accounts
        self.ledger = ledger
        self.pipeline = pipeline
        self.broadcaster = broadcaster
        self.custody = custody
        self.request_timeout = request_timeout
        self.custody_timeout = custody_timeout

        self._handlers: dict[RpcMethod, Handler] = {
            RpcMethod.GET_ADDRESSES: self._get_addresses,
            RpcMethod.GET_UTXOS: self._get_utxos,
            RpcMethod.SIGN_MESSAGE: self._sign_message,
            RpcMethod.SIGN_PSBT: self._sign_psbt,
            RpcMethod.FINALIZE_PSBT: self._finalize_psbt,
            RpcMethod.BROADCAST_TRANSACTION: self._broadcast_transaction,
        }
        missing = set(RpcMethod) - set(self._handlers) | set(RpcMethod) - set(PARAMS_MODELS)
        if missing:
            raise RuntimeError(f"No handler for methods: {sorted(m.value for m in missing)}")

    async def handle(
        self,
        topic: str,
        method: str,
        params: Any,
        request_id: int | str,
        chain_id: str | None = None,
    ) -> JsonRpcResponse:
        try:
            result = await self._dispatch(topic, method, params, chain_id)
        except BridgeError as e:
            logger.info(f"Request {request_id} ({method}) failed: [{e.code}] {e.message}")
            return JsonRpcResponse.failure(request_id, e.to_payload())
        except Exception as e:
            logger.exception(f"Unexpected error handling {method}: {e}")
            return JsonRpcResponse.failure(
                request_id, InternalError(f"Internal error: {type(e).__name__}").to_payload()
            )
        return JsonRpcResponse.success(request_id, result)

    async def _dispatch(
        self, topic: str, method: str, params: Any, chain_id: str | None
    ) -> Any:
        session = self.sessions.get(topic)
        if session is None or session.is_expired():
            raise Unauthorized(f"No active session for topic {topic}")

        try:
            rpc_method = RpcMethod(method)
        except ValueError as e:
            raise UnsupportedMethod(f"Method {method} is not supported") from e

        if rpc_method.value not in session.methods:
            raise Unauthorized(f"Method {method} was not granted to this session")

        chain = self._resolve_chain(session, chain_id)
        parsed = self._parse_params(rpc_method, params)

        context = RequestContext(
            session=session,
            chain_id=chain,
            accounts=[
                account
                for account in session.accounts
                if account.chain_id == chain and account in self.accounts
            ],
        )

        logger.debug(f"Dispatching {method} for topic {topic}")
        try:
            return await asyncio.wait_for(
                self._handlers[rpc_method](context, parsed), self.request_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportTimeout(
                f"{method} did not complete within {self.request_timeout}s"
            ) from e

    def _resolve_chain(self, session: Session, chain_id: str | None) -> ChainId:
        raw = chain_id or session.active_chain or next(iter(session.namespace.chains), None)
        if raw is None:
            raise UnsupportedChain("Session has no granted chain")
        chain = parse_chain_id(raw)
        if str(chain) not in session.namespace.chains:
            raise UnsupportedChain(f"Chain {raw} was not granted to this session")
        return chain

    def _parse_params(self, method: RpcMethod, params: Any) -> _Params:
        if params is None:
            params = {}
        # Some dApps wrap the params object in a single-element list
        if isinstance(params, list) and len(params) == 1 and isinstance(params[0], dict):
            params = params[0]
        if not isinstance(params, dict):
            raise InvalidParams(f"Params for {method.value} must be an object")
        try:
            return PARAMS_MODELS[method].model_validate(params)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "error": err["msg"]}
                for err in e.errors()
            ]
            raise InvalidParams(
                f"Invalid params for {method.value}", data={"errors": errors}
            ) from e

    def _authorize(self, context: RequestContext, value: str) -> DerivedAccount:
        """Resolve an address or CAIP-10 id to a session account."""
        try:
            account_id = self.identity.parse_account(value)
        except InvalidAccountId as e:
            raise InvalidParams(e.message) from e
        account = self.accounts.get(account_id)
        if account_id not in context.accounts or account is None:
            raise Unauthorized(f"Account {value} is not authorized for this session")
        return account

    async def _get_addresses(self, context: RequestContext, params: GetAddressesParams) -> list:
        result = []
        for account_id in context.accounts:
            account = self.accounts.get(account_id)
            if account is not None:
                result.append(account.to_dict())
        return result

    async def _get_utxos(self, context: RequestContext, params: GetUtxosParams) -> Any:
        if params.address is not None:
            account_ids = [self._authorize(context, params.address).account_id]
        else:
            account_ids = context.accounts

        if params.amount is not None:
            selected = await self.ledger.select(account_ids, params.amount)
            return {
                "utxos": [utxo.to_dict() for utxo in selected],
                "total": sum(utxo.value for utxo in selected),
                "target": params.amount,
            }

        utxos = []
        for account_id in account_ids:
            utxos.extend(await self.ledger.refresh(account_id))
        utxos.sort(key=lambda u: (u.txid, u.vout))
        return [utxo.to_dict() for utxo in utxos]

    async def _sign_message(self, context: RequestContext, params: SignMessageParams) -> dict:
        account = self._authorize(context, params.address)
        digest = message_hash(params.message, self.identity.params.message_magic)
        try:
            der = await asyncio.wait_for(
                self.custody.sign(digest, account.path), self.custody_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportTimeout(f"Custody did not answer within {self.custody_timeout}s") from e
        except CustodyError as e:
            raise SigningDenied(f"custody refused: {e}", step="sign_message") from e

        try:
            compact = recover_compact_signature(der, digest, account.public_key)
        except MessageSignatureError as e:
            raise InternalError(f"Custody signature does not match account key: {e}") from e

        return {
            "address": account.address,
            "signature": base64.b64encode(compact).decode("ascii"),
        }

    async def _sign_psbt(self, context: RequestContext, params: SignPsbtParams) -> dict:
        if params.account is not None:
            signers = [self._authorize(context, params.account).account_id]
        else:
            signers = None

        session = self.pipeline.decode(params.psbt_base64)
        await self.ledger.ensure_fresh(context.accounts)
        self.pipeline.verify_inputs(session, context.accounts)

        if signers is None:
            signers = []
            for ref in session.inputs:
                if ref.account_id is not None and ref.account_id not in signers:
                    signers.append(ref.account_id)

        for account_id in signers:
            await self.pipeline.sign(session, account_id, context.accounts)

        return {"psbtBase64": self.pipeline.encode(session)}

    async def _finalize_psbt(self, context: RequestContext, params: FinalizePsbtParams) -> dict:
        session = self.pipeline.decode(params.psbt_base64)
        raw_hex = self.pipeline.finalize(session)
        return {"hex": raw_hex, "psbtBase64": self.pipeline.encode(session)}

    async def _broadcast_transaction(
        self, context: RequestContext, params: BroadcastTransactionParams
    ) -> dict:
        txid = await self.broadcaster.broadcast(params.tx_hex)
        return {"txid": txid}
