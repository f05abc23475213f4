"""
WalletConnect transport interface and the events it delivers.

The relay client itself lives outside this package. A transport pushes
inbound events into BridgeSupervisor.submit and carries the supervisor's
replies back to the relay. Any method may raise TransportError when the
topic cannot be reached.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from neuraiwc.errors import BridgeError
from neuraiwc.models import (
    JsonRpcResponse,
    PeerMetadata,
    ProposalNamespace,
    Session,
    SessionNamespace,
)


@dataclass(frozen=True)
class SessionProposal:
    id: int | str
    required_namespaces: dict[str, ProposalNamespace]
    optional_namespaces: dict[str, ProposalNamespace] = field(default_factory=dict)
    peer: PeerMetadata = field(default_factory=PeerMetadata)
    expiry: datetime | None = None


@dataclass(frozen=True)
class SessionRequest:
    topic: str
    id: int | str
    method: str
    params: Any = None
    chain_id: str | None = None


@dataclass(frozen=True)
class SessionDelete:
    topic: str


@dataclass(frozen=True)
class SessionExpire:
    topic: str


@dataclass(frozen=True)
class TopicLost:
    """The relay connection for a topic dropped."""

    topic: str


TransportEvent = SessionProposal | SessionRequest | SessionDelete | SessionExpire | TopicLost


class Transport(ABC):
    @abstractmethod
    async def pair(self, uri: str) -> None:
        """Pair with a dApp from a wc: URI"""

    @abstractmethod
    async def approve(
        self, proposal: SessionProposal, namespaces: dict[str, SessionNamespace]
    ) -> str:
        """Approve a proposal, returns the session topic"""

    @abstractmethod
    async def reject(self, proposal: SessionProposal, error: BridgeError) -> None:
        """Reject a proposal"""

    @abstractmethod
    async def respond(self, topic: str, response: JsonRpcResponse) -> None:
        """Send a JSON-RPC response on a session topic"""

    @abstractmethod
    async def emit(self, topic: str, event: str, data: Any, chain_id: str) -> None:
        """Emit a session event"""

    @abstractmethod
    async def update(self, topic: str, namespaces: dict[str, SessionNamespace]) -> None:
        """Push updated namespaces for a session"""

    @abstractmethod
    async def resume(self, session: Session) -> Session:
        """Re-establish a persisted session; the returned topic may differ"""

    @abstractmethod
    async def disconnect(self, topic: str, reason: str) -> None:
        """Close a session"""
