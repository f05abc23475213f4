"""
WalletConnect session and JSON-RPC data models using Pydantic.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from neuraiwc.chain_identity import AccountId, ChainId, parse_account_id, parse_chain_id
from neuraiwc.constants import BIP122_NAMESPACE


class ProposalNamespace(BaseModel):
    """A namespace as requested by a dApp in a session proposal."""

    chains: list[str] = Field(default_factory=list)
    methods: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)


class SessionNamespace(BaseModel):
    """A namespace as granted by the wallet."""

    chains: list[str] = Field(default_factory=list)
    methods: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
    accounts: list[str] = Field(default_factory=list)


class PeerMetadata(BaseModel):
    name: str = ""
    description: str = ""
    url: str = ""
    icons: list[str] = Field(default_factory=list)


class Session(BaseModel):
    """
    An approved WalletConnect session.

    Topics come from the transport and may change when a session is resumed
    after a restart; the namespace and accounts are what carry over.
    """

    topic: str = Field(..., min_length=1)
    namespaces: dict[str, SessionNamespace]
    peer: PeerMetadata = Field(default_factory=PeerMetadata)
    expiry: datetime | None = None
    active_chain: str | None = None

    @property
    def namespace(self) -> SessionNamespace:
        return self.namespaces.get(BIP122_NAMESPACE, SessionNamespace())

    @property
    def chains(self) -> list[ChainId]:
        return [parse_chain_id(chain) for chain in self.namespace.chains]

    @property
    def accounts(self) -> list[AccountId]:
        return [parse_account_id(account) for account in self.namespace.accounts]

    @property
    def methods(self) -> list[str]:
        return self.namespace.methods

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expiry is None:
            return False
        return (now or datetime.now(UTC)) >= self.expiry

    def with_accounts(self, accounts: list[AccountId]) -> Session:
        namespace = self.namespace.model_copy(update={"accounts": [str(a) for a in accounts]})
        namespaces = {**self.namespaces, BIP122_NAMESPACE: namespace}
        return self.model_copy(update={"namespaces": namespaces})


class JsonRpcError(BaseModel):
    code: int
    message: str
    data: dict[str, Any] | None = None


class JsonRpcResponse(BaseModel):
    """A JSON-RPC 2.0 response correlated to a request id."""

    model_config = ConfigDict(frozen=True)

    id: int | str
    jsonrpc: str = "2.0"
    result: Any = None
    error: JsonRpcError | None = None

    @model_validator(mode="after")
    def check_result_or_error(self) -> JsonRpcResponse:
        if self.error is not None and self.result is not None:
            raise ValueError("Response cannot carry both result and error")
        return self

    @classmethod
    def success(cls, request_id: int | str, result: Any) -> JsonRpcResponse:
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: int | str, payload: dict[str, Any]) -> JsonRpcResponse:
        return cls(id=request_id, error=JsonRpcError(**payload))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "jsonrpc": self.jsonrpc}
        if self.error is not None:
            data["error"] = self.error.model_dump(exclude_none=True)
        else:
            data["result"] = self.result
        return data
