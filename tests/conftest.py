"""
Shared fixtures: a deterministic HD wallet on Neurai mainnet, a scriptable
chain backend, a recording transport and PSBT builders.
"""

from __future__ import annotations

import itertools
from typing import Any

import pytest

from neuraiwc.accounts import AccountRegistry, DerivedAccount
from neuraiwc.backends.base import ChainBackend, Utxo
from neuraiwc.chain_identity import ChainId, ChainIdentity
from neuraiwc.constants import NEURAI_MAINNET_REFERENCE, NetworkType, get_network_params
from neuraiwc.errors import TransportError
from neuraiwc.ledger import UtxoLedgerView
from neuraiwc.models import JsonRpcResponse, Session, SessionNamespace
from neuraiwc.psbt_pipeline import PsbtPipeline
from neuraiwc.transport import SessionProposal, Transport
from neuraiwc.wallet.address import hash160, p2pkh_script, pubkey_to_p2pkh_address
from neuraiwc.wallet.bip32 import ExtendedPrivateKey, mnemonic_to_seed
from neuraiwc.wallet.custody import HDCustody
from neuraiwc.wallet.psbt import Psbt
from neuraiwc.wallet.transaction import (
    Transaction,
    TxInput,
    TxOutput,
    deserialize_transaction,
    serialize_transaction,
    transaction_id,
)

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
MAINNET_CHAIN = f"bip122:{NEURAI_MAINNET_REFERENCE}"
OTHER_REFERENCE = "000000000019d6689c085ae165831e93"


class FakeBackend(ChainBackend):
    """In-memory chain: UTXOs per address and scripted broadcast failures."""

    def __init__(self):
        self.utxos: dict[str, list[Utxo]] = {}
        self.fetch_errors: list[Exception] = []
        self.broadcast_errors: list[Exception] = []
        self.broadcasts: list[str] = []
        self.fetch_count = 0
        self.height = 1000
        self.closed = False

    async def get_utxos(self, address: str) -> list[Utxo]:
        self.fetch_count += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return list(self.utxos.get(address, []))

    async def broadcast_raw_transaction(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        return transaction_id(deserialize_transaction(bytes.fromhex(tx_hex)))

    async def get_block_height(self) -> int:
        return self.height

    async def close(self) -> None:
        self.closed = True


class RecordingTransport(Transport):
    """Transport double recording every outbound call."""

    def __init__(self):
        self.topic_counter = itertools.count(1)
        self.approved: list[tuple[SessionProposal, dict[str, SessionNamespace]]] = []
        self.rejected: list[tuple[SessionProposal, Any]] = []
        self.responses: list[tuple[str, JsonRpcResponse]] = []
        self.events: list[tuple[str, str, Any, str]] = []
        self.updates: list[tuple[str, dict[str, SessionNamespace]]] = []
        self.resumed: list[Session] = []
        self.resume_failures = 0
        self.resume_topic: str | None = None
        self.disconnected: list[str] = []
        self.calls: list[tuple[str, Any]] = []

    async def pair(self, uri: str) -> None:
        pass

    async def approve(self, proposal, namespaces) -> str:
        self.approved.append((proposal, namespaces))
        return f"topic-{next(self.topic_counter)}"

    async def reject(self, proposal, error) -> None:
        self.rejected.append((proposal, error))

    async def respond(self, topic, response) -> None:
        self.responses.append((topic, response))
        self.calls.append(("respond", response.id))

    async def emit(self, topic, event, data, chain_id) -> None:
        self.events.append((topic, event, data, chain_id))
        self.calls.append(("emit", event))

    async def update(self, topic, namespaces) -> None:
        self.updates.append((topic, namespaces))

    async def resume(self, session: Session) -> Session:
        if self.resume_failures > 0:
            self.resume_failures -= 1
            raise TransportError(f"relay unreachable for {session.topic}")
        self.resumed.append(session)
        if self.resume_topic is not None:
            return session.model_copy(update={"topic": self.resume_topic})
        return session

    async def disconnect(self, topic, reason) -> None:
        self.disconnected.append(topic)


@pytest.fixture
def params():
    return get_network_params(NetworkType.MAINNET)


@pytest.fixture
def identity(params):
    return ChainIdentity(ChainId("bip122", NEURAI_MAINNET_REFERENCE), params)


@pytest.fixture
def custody():
    return HDCustody(TEST_MNEMONIC)


@pytest.fixture
def wallet_accounts(identity):
    """First two receive accounts of the test mnemonic."""
    master = ExtendedPrivateKey.from_seed(mnemonic_to_seed(TEST_MNEMONIC))
    accounts = []
    for index in range(2):
        path = identity.params.account_path(index)
        public_key = master.derive(path).public_key_bytes
        address = pubkey_to_p2pkh_address(public_key, identity.params.pubkey_address_version)
        accounts.append(DerivedAccount(identity.account_id(address), path, public_key))
    return accounts


@pytest.fixture
def registry(wallet_accounts):
    return AccountRegistry(wallet_accounts)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def clock():
    """Mutable monotonic clock: advance with clock.now += seconds."""

    class Clock:
        now = 0.0

        def __call__(self) -> float:
            return self.now

    return Clock()


@pytest.fixture
def ledger(backend, identity, clock):
    return UtxoLedgerView(
        backend, identity, max_age=60.0, min_confirmations=1, base_delay=0.0, clock=clock
    )


@pytest.fixture
def pipeline(ledger, custody, registry):
    return PsbtPipeline(ledger, custody, registry, custody_timeout=5.0)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def fund(backend):
    """
    Create a confirmed UTXO paying value sats to an account.

    Returns (utxo, previous transaction); the UTXO is registered with the
    fake backend so the next ledger refresh sees it.
    """
    counter = itertools.count()

    def _fund(
        account: DerivedAccount, value: int, confirmations: int = 6
    ) -> tuple[Utxo, Transaction]:
        script = p2pkh_script(hash160(account.public_key))
        prev_tx = Transaction(
            version=2,
            inputs=[TxInput(bytes(32), next(counter), b"\x51")],
            outputs=[TxOutput(value, script)],
        )
        utxo = Utxo(
            txid=transaction_id(prev_tx),
            vout=0,
            value=value,
            address=account.address,
            scriptpubkey=script.hex(),
            confirmations=confirmations,
            height=backend.height - confirmations + 1 if confirmations else None,
        )
        backend.utxos.setdefault(account.address, []).append(utxo)
        return utxo, prev_tx

    return _fund


@pytest.fixture
def build_psbt():
    """Build an unsigned PSBT spending the given UTXOs to a single output."""

    def _build(
        utxos: list[Utxo],
        prev_txs: list[Transaction] | None = None,
        output_value: int = 1000,
    ) -> Psbt:
        tx = Transaction(
            version=2,
            inputs=[TxInput.from_outpoint(utxo.txid, utxo.vout) for utxo in utxos],
            outputs=[TxOutput(output_value, p2pkh_script(bytes(20)))],
        )
        psbt = Psbt.create(tx)
        for psbt_in, prev_tx in zip(psbt.inputs, prev_txs or [], strict=False):
            psbt_in.non_witness_utxo = serialize_transaction(prev_tx)
        return psbt

    return _build
