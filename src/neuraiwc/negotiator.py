"""
Session proposal negotiation.

A proposal is accepted only if every required chain is the configured Neurai
chain; there is no partial accept of required namespaces. Optional chains
the wallet does not serve are dropped silently.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass

from loguru import logger

from neuraiwc.chain_identity import (
    AccountId,
    ChainId,
    ChainIdentity,
    is_caip2,
    parse_chain_id,
)
from neuraiwc.constants import BIP122_NAMESPACE, REQUIRED_EVENTS, SUPPORTED_EVENTS, RpcMethod
from neuraiwc.errors import BridgeError, InvalidChainId, UnsupportedChain
from neuraiwc.models import ProposalNamespace, SessionNamespace

IMPLEMENTED_METHODS = frozenset(method.value for method in RpcMethod)


@dataclass(frozen=True)
class Accepted:
    namespaces: dict[str, SessionNamespace]


@dataclass(frozen=True)
class Rejected:
    error: BridgeError


NegotiationResult = Accepted | Rejected


def _namespace_chains(key: str, namespace: ProposalNamespace) -> list[str]:
    """Chains of a namespace, including the chain in a 'bip122:<ref>' key."""
    if key == BIP122_NAMESPACE:
        return list(namespace.chains)
    if key.startswith(f"{BIP122_NAMESPACE}:"):
        return [key, *namespace.chains]
    raise UnsupportedChain(f"Unsupported namespace '{key}'")


def _as_namespaces(
    raw: Mapping[str, ProposalNamespace | dict] | None,
) -> dict[str, ProposalNamespace]:
    result = {}
    for key, value in (raw or {}).items():
        result[key] = value if isinstance(value, ProposalNamespace) else ProposalNamespace(**value)
    return result


class SessionNegotiator:
    def __init__(self, identity: ChainIdentity, accounts: Callable[[], list[AccountId]]):
        self.identity = identity
        self._accounts = accounts

    def _required_chains(self, required: dict[str, ProposalNamespace]) -> list[ChainId]:
        chains: list[ChainId] = []
        for key, namespace in required.items():
            raw_chains = _namespace_chains(key, namespace)
            if not raw_chains:
                raise UnsupportedChain(f"Required namespace '{key}' lists no chains")
            for raw in raw_chains:
                if is_caip2(raw) and not raw.startswith(f"{BIP122_NAMESPACE}:"):
                    raise UnsupportedChain(f"Chain {raw} is not supported")
                chain_id = parse_chain_id(raw)
                if not self.identity.is_supported(chain_id):
                    raise UnsupportedChain(f"Chain {raw} is not supported")
                if chain_id not in chains:
                    chains.append(chain_id)
        return chains

    def _optional_chains(self, optional: dict[str, ProposalNamespace]) -> list[ChainId]:
        chains = []
        for key, namespace in optional.items():
            try:
                raw_chains = _namespace_chains(key, namespace)
            except UnsupportedChain:
                continue
            for raw in raw_chains:
                try:
                    chain_id = parse_chain_id(raw)
                except InvalidChainId:
                    continue
                if self.identity.is_supported(chain_id) and chain_id not in chains:
                    chains.append(chain_id)
        return chains

    def evaluate(
        self,
        required: Mapping[str, ProposalNamespace | dict],
        optional: Mapping[str, ProposalNamespace | dict] | None = None,
    ) -> NegotiationResult:
        required_ns = _as_namespaces(required)
        optional_ns = _as_namespaces(optional)

        try:
            chains = self._required_chains(required_ns)
        except BridgeError as e:
            logger.info(f"Rejecting proposal: {e.message}")
            return Rejected(e)

        for chain_id in self._optional_chains(optional_ns):
            if chain_id not in chains:
                chains.append(chain_id)

        if not chains:
            logger.info("Rejecting proposal: no supported chain requested")
            return Rejected(UnsupportedChain("No supported chain requested"))

        requested = [*required_ns.values(), *optional_ns.values()]

        methods: list[str] = []
        for namespace in requested:
            for method in namespace.methods:
                if method in IMPLEMENTED_METHODS and method not in methods:
                    methods.append(method)

        events = list(REQUIRED_EVENTS)
        for namespace in requested:
            for event in namespace.events:
                if event in SUPPORTED_EVENTS and event not in events:
                    events.append(event)

        accounts = [
            str(account) for account in self._accounts() if account.chain_id in chains
        ]

        granted = SessionNamespace(
            chains=[str(chain_id) for chain_id in chains],
            methods=methods,
            events=events,
            accounts=accounts,
        )
        logger.info(f"Accepting proposal: chains={granted.chains} methods={granted.methods}")
        return Accepted({BIP122_NAMESPACE: granted})
